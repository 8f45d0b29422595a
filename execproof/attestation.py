"""
execproof Execution Attestors

An attestor vouches for the environment an execution ran in, a trusted
execution environment quote for instance. The protocol treats it as
optional: when present, the digest of its attestation becomes one more
public input and the verifier checks it, and the session state machine is
unchanged.

``Ed25519Attestor`` is a software stand-in that signs the execution
context; a hardware quote verifier plugs into ``AttestationVerifier``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .hashing import object_hash
from .signing import KeyPair, verify_object_signature
from .util import require_str


@dataclass(frozen=True)
class ExecutionContext:
    """What an attestor is asked to vouch for."""
    challenge_id: str
    binary_checksum: str
    output_digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "binary_checksum": self.binary_checksum,
            "output_digest": self.output_digest,
        }


@dataclass(frozen=True)
class Attestation:
    attestor_id: str
    context: ExecutionContext
    evidence: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestor_id": self.attestor_id,
            "context": self.context.to_dict(),
            "evidence": self.evidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Attestation':
        attestor_id = require_str(data, "attestor_id")
        ctx = data.get("context")
        return cls(
            attestor_id=attestor_id,
            context=ExecutionContext(
                challenge_id=require_str(ctx, "challenge_id"),
                binary_checksum=require_str(ctx, "binary_checksum"),
                output_digest=require_str(ctx, "output_digest")
            ),
            evidence=require_str(data, "evidence")
        )

    def digest(self) -> str:
        return object_hash(self.to_dict())


class Attestor(ABC):
    @abstractmethod
    def attest(self, execution_context: ExecutionContext) -> Attestation:
        """Produce an attestation for ``execution_context``."""


class AttestationVerifier(ABC):
    @abstractmethod
    def verify(self, attestation: Attestation) -> bool:
        """True if ``attestation`` is genuine. Never raises."""


class Ed25519Attestor(Attestor):
    def __init__(self, key_pair: Optional[KeyPair] = None, key_id: str = "kid:execproof-attestor"):
        self.key_pair = key_pair or KeyPair.generate(key_id)

    def attest(self, execution_context: ExecutionContext) -> Attestation:
        return Attestation(
            attestor_id=self.key_pair.key_id,
            context=execution_context,
            evidence=self.key_pair.sign_object(execution_context.to_dict())
        )


class Ed25519AttestationVerifier(AttestationVerifier):
    """Accepts attestations signed by any of the trusted attestor keys."""

    def __init__(self, trusted_keys: Dict[str, bytes]):
        self.trusted_keys = dict(trusted_keys)

    @classmethod
    def for_attestor(cls, attestor: Ed25519Attestor) -> 'Ed25519AttestationVerifier':
        return cls({attestor.key_pair.key_id: attestor.key_pair.verify_key})

    def verify(self, attestation: Attestation) -> bool:
        key = self.trusted_keys.get(attestation.attestor_id)
        if key is None:
            return False
        return verify_object_signature(attestation.context.to_dict(), attestation.evidence, key)
