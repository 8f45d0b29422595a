"""
execproof Sandbox Interface

Running the target binary is an external concern. A sandbox takes the
binary path, its arguments and an opaque challenge tag and hands back raw
output plus an exit status. Isolation guarantees are the sandbox's own
business.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence

from . import config
from .errors import ErrorKind, ExecProofError, Stage

logger = logging.getLogger(__name__)

CHALLENGE_TAG_ENV = "EXECPROOF_CHALLENGE_TAG"


@dataclass(frozen=True)
class ExecutionResult:
    raw_output: bytes = field(repr=False)
    exit_status: int

    def succeeded(self) -> bool:
        return self.exit_status == 0


def require_success(result: ExecutionResult, binary_path: str) -> bytes:
    """
    Return the raw output of a successful run.

    Raises:
        ExecProofError: SANDBOX_EXECUTION_FAILED on a non-zero exit status
    """
    if not result.succeeded():
        raise ExecProofError(
            ErrorKind.SANDBOX_EXECUTION_FAILED, Stage.EXECUTE,
            f"{binary_path} exited with status {result.exit_status}",
            {"exit_status": result.exit_status}
        )
    return result.raw_output


class Sandbox(ABC):
    @abstractmethod
    def execute(self, binary_path: str, args: Sequence[str], challenge_tag: str) -> ExecutionResult:
        """
        Run a binary.

        Raises:
            ExecProofError: SANDBOX_EXECUTION_FAILED when the binary could
                not be run at all
        """


class SubprocessSandbox(Sandbox):
    """
    Runs the binary as a child process and captures stdout.

    No isolation beyond process boundaries. The challenge tag is exported
    as ``EXECPROOF_CHALLENGE_TAG`` when ``export_tag`` is set, for binaries
    that read it from the environment rather than argv.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        export_tag: bool = False,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None
    ):
        self.timeout_seconds = config.SANDBOX_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.export_tag = export_tag
        self.env = env
        self.cwd = cwd

    def execute(self, binary_path: str, args: Sequence[str], challenge_tag: str) -> ExecutionResult:
        env = dict(self.env) if self.env is not None else dict(os.environ)
        if self.export_tag:
            env[CHALLENGE_TAG_ENV] = challenge_tag

        try:
            completed = subprocess.run(
                [binary_path, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                env=env,
                cwd=self.cwd,
                check=False
            )
        except subprocess.TimeoutExpired as e:
            raise ExecProofError(
                ErrorKind.SANDBOX_EXECUTION_FAILED, Stage.EXECUTE,
                f"{binary_path} timed out after {self.timeout_seconds}s"
            ) from e
        except OSError as e:
            raise ExecProofError(
                ErrorKind.SANDBOX_EXECUTION_FAILED, Stage.EXECUTE,
                f"Could not execute {binary_path}: {e}"
            ) from e

        if completed.returncode != 0:
            logger.warning(
                "%s exited with status %d: %s",
                binary_path, completed.returncode,
                completed.stderr.decode('utf-8', errors='replace')[:200]
            )
        return ExecutionResult(raw_output=completed.stdout, exit_status=completed.returncode)


class CallableSandbox(Sandbox):
    """
    Adapts a plain function ``fn(binary_path, args, challenge_tag)`` that
    returns ``(raw_output, exit_status)``. Handy for in-process tools and
    tests. Anything the function raises, or a result of the wrong shape,
    becomes SANDBOX_EXECUTION_FAILED.
    """

    def __init__(self, fn: Callable[[str, Sequence[str], str], tuple]):
        self.fn = fn

    def execute(self, binary_path: str, args: Sequence[str], challenge_tag: str) -> ExecutionResult:
        try:
            raw_output, exit_status = self.fn(binary_path, list(args), challenge_tag)
            return ExecutionResult(raw_output=bytes(raw_output), exit_status=int(exit_status))
        except ExecProofError:
            raise
        except Exception as e:
            raise ExecProofError(
                ErrorKind.SANDBOX_EXECUTION_FAILED, Stage.EXECUTE,
                f"Could not execute {binary_path}: {e}"
            ) from e
