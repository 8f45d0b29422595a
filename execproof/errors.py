"""
execproof Error Taxonomy

Every failure that can end a proof session is an ``ExecProofError`` carrying
an ``ErrorKind`` and the name of the stage that raised it. These are all
recoverable at session granularity.

The one process-fatal condition, failure to obtain secure randomness, is
``EntropyUnavailableError``. It deliberately does not derive from
``ExecProofError`` so that handlers written for session failures never
absorb it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Failure kinds reported by every component."""
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    BINDING_FAILURE = "BINDING_FAILURE"
    COMMITMENT_MISMATCH = "COMMITMENT_MISMATCH"
    CIRCUIT_VERIFICATION_FAILED = "CIRCUIT_VERIFICATION_FAILED"
    SANDBOX_EXECUTION_FAILED = "SANDBOX_EXECUTION_FAILED"
    STALE_CHALLENGE = "STALE_CHALLENGE"
    ATTESTATION_FAILED = "ATTESTATION_FAILED"
    INVALID_STATE = "INVALID_STATE"
    CANCELLED = "CANCELLED"


class Stage(str, Enum):
    """Protocol stage names attached to errors and rejections."""
    ISSUE = "issue"
    CONSUME = "consume"
    EXECUTE = "execute"
    BIND = "bind"
    COMMIT = "commit"
    PROVE = "prove"
    VERIFY_CHALLENGE = "verify.challenge"
    VERIFY_CHECKSUM = "verify.checksum"
    VERIFY_CIRCUIT = "verify.circuit"
    VERIFY_COMMITMENT = "verify.commitment"
    SESSION = "session"
    REGISTRY = "registry"


class ExecProofError(Exception):
    """A session-level protocol failure."""

    def __init__(
        self,
        kind: ErrorKind,
        stage: Stage,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.kind = kind
        self.stage = stage
        self.message = message
        self.details = details or {}
        super().__init__(f"[{stage.value}] {kind.value}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "stage": self.stage.value,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d


class EntropyUnavailableError(RuntimeError):
    """
    The operating system could not supply secure random bytes.

    Raised instead of falling back to a weaker generator. Callers are
    expected to let this propagate and abort.
    """
