"""
execproof Execution Binder

Turns a consumed challenge, a binary identity and captured program output
into an ``ExecutionWitness``. The witness carries

    output_digest = SHA-256(challenge.nonce || raw_output)

which a deterministic binary's public output alone cannot produce. The
binder refuses to bind against a challenge that has not been consumed,
so no witness can exist before its challenge did.

Nonce binding modes
-------------------
INPUT_AND_DIGEST
    The nonce is also handed to the binary as an argument, so the output
    itself depends on the challenge.
DIGEST_ONLY
    For argument-insensitive binaries (a fixed metrics tool, say). The
    nonce is bound only at the digest layer and the protection rests on
    the prover committing while the challenge is live. Integrators choose
    this mode per binary and it is recorded on the witness.
"""

import hmac
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .challenge import Challenge, ChallengeState
from .errors import ErrorKind, ExecProofError, Stage
from .hashing import digests_equal, output_digest
from .identity import BinaryIdentity, compute_binary_identity
from .util import Clock, to_rfc3339, utc_now


class NonceBinding(str, Enum):
    INPUT_AND_DIGEST = "INPUT_AND_DIGEST"
    DIGEST_ONLY = "DIGEST_ONLY"


@dataclass(frozen=True)
class ExecutionRequest:
    """What the sandbox is asked to run for one challenge."""
    binary_path: str
    args: List[str]
    challenge_tag: str
    nonce_binding: NonceBinding


@dataclass(frozen=True)
class ExecutionWitness:
    """
    Private input to the circuit.

    ``raw_output`` never leaves the prover; only the commitment over the
    whole witness is published.
    """
    challenge_id: str
    binary_checksum: str
    raw_output: bytes = field(repr=False)
    output_digest: str
    captured_at: datetime
    nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "binary_checksum": self.binary_checksum,
            "raw_output": self.raw_output.hex(),
            "output_digest": self.output_digest,
            "captured_at": to_rfc3339(self.captured_at),
            "nonce_binding": self.nonce_binding.value,
        }


class ExecutionBinder:
    """Builds execution requests and nonce-bound witnesses."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    def execution_request(
        self,
        challenge: Challenge,
        binary_identity: BinaryIdentity,
        args: Optional[Sequence[str]] = None,
        nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY
    ) -> ExecutionRequest:
        """
        Build the sandbox request for ``challenge``.

        With INPUT_AND_DIGEST the hex nonce is appended as the final
        argument. The challenge tag handed to the sandbox is always the
        hex nonce; a DIGEST_ONLY sandbox is free to ignore it.
        """
        if not binary_identity.path:
            raise ValueError("binary identity has no path to execute")
        argv = list(args or [])
        if nonce_binding == NonceBinding.INPUT_AND_DIGEST:
            argv.append(challenge.nonce_hex)
        return ExecutionRequest(
            binary_path=binary_identity.path,
            args=argv,
            challenge_tag=challenge.nonce_hex,
            nonce_binding=nonce_binding
        )

    def bind(
        self,
        challenge: Challenge,
        binary_identity: BinaryIdentity,
        raw_output: bytes,
        nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY
    ) -> ExecutionWitness:
        """
        Bind captured output to a consumed challenge.

        Raises:
            ExecProofError: BINDING_FAILURE if the challenge is not
                CONSUMED, CHECKSUM_MISMATCH if it was issued for another
                binary, STALE_CHALLENGE if it is past its expiry
        """
        if challenge.state != ChallengeState.CONSUMED:
            raise ExecProofError(
                ErrorKind.BINDING_FAILURE, Stage.BIND,
                f"Challenge {challenge.challenge_id} must be consumed before binding "
                f"(state {challenge.state.value})"
            )
        if not digests_equal(challenge.binary_checksum, binary_identity.checksum):
            raise ExecProofError(
                ErrorKind.CHECKSUM_MISMATCH, Stage.BIND,
                "Challenge was issued for a different binary",
                {"challenge": challenge.binary_checksum, "binary": binary_identity.checksum}
            )
        now = self.clock()
        if challenge.is_expired(now):
            raise ExecProofError(
                ErrorKind.STALE_CHALLENGE, Stage.BIND,
                f"Challenge {challenge.challenge_id} expired at {to_rfc3339(challenge.expires_at)}"
            )
        if not isinstance(raw_output, (bytes, bytearray)):
            raise TypeError("raw_output must be bytes")

        return ExecutionWitness(
            challenge_id=challenge.challenge_id,
            binary_checksum=binary_identity.checksum,
            raw_output=bytes(raw_output),
            output_digest=output_digest(challenge.nonce, raw_output),
            captured_at=now,
            nonce_binding=nonce_binding
        )

    def check_witness(self, witness: ExecutionWitness, nonce: bytes) -> None:
        """
        Recompute the output digest against ``nonce``.

        Raises:
            ExecProofError: BINDING_FAILURE on mismatch
        """
        expected = output_digest(nonce, witness.raw_output)
        if not digests_equal(expected, witness.output_digest):
            raise ExecProofError(
                ErrorKind.BINDING_FAILURE, Stage.BIND,
                "Output digest is not bound to this challenge nonce"
            )

    def verify_binary_identity(
        self,
        path: Union[str, Path],
        name: Optional[str] = None,
        version: str = "unversioned"
    ) -> BinaryIdentity:
        """Recompute a binary's identity from its file bytes."""
        return compute_binary_identity(path, name=name, version=version)

    def check_binary_identity(self, claimed: BinaryIdentity) -> BinaryIdentity:
        """
        Re-hash ``claimed.path`` and confirm it matches ``claimed.checksum``.

        Raises:
            ExecProofError: CHECKSUM_MISMATCH if the file bytes disagree
        """
        if not claimed.path:
            raise ValueError("claimed identity has no path to re-hash")
        actual = self.verify_binary_identity(claimed.path, claimed.name, claimed.version)
        if not hmac.compare_digest(actual.checksum, claimed.checksum):
            raise ExecProofError(
                ErrorKind.CHECKSUM_MISMATCH, Stage.BIND,
                f"File at {claimed.path} does not match the claimed checksum",
                {"claimed": claimed.checksum, "actual": actual.checksum}
            )
        return actual
