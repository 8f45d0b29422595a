"""
execproof Proof Verifier

Checks a session's public projection. Four hard gates run in order and the
first failure ends verification:

    (a) challenge   issued by this verifier's issuer, not expired,
                    consumed on the issuer's own record, and not
                    already used for an accepted proof
    (b) checksum    the claimed binary checksum equals the registry's
                    expected checksum for that name and version
    (c) circuit     the declared nonce is the issued nonce, the backend
                    accepts the proof, and any attestation checks out
    (d) commitment  the declared commitment equals the one recorded while
                    the challenge was live

A rejection always names the failing gate and the error kind. Nothing is
accepted partially.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .attestation import Attestation, AttestationVerifier
from .backends import CircuitBackend, Proof
from .binder import NonceBinding
from .challenge import Challenge, ChallengeIssuer
from .errors import ErrorKind, ExecProofError, Stage
from .hashing import digests_equal
from .identity import BinaryIdentity
from .logging_config import audit_log
from .registry import ChecksumRegistry
from .util import require_str


class VerificationOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class VerificationResult:
    """Result of verifying a session transcript."""
    outcome: VerificationOutcome
    kind: Optional[ErrorKind] = None
    stage: Optional[Stage] = None
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    gates_passed: List[str] = field(default_factory=list)

    def is_accepted(self) -> bool:
        return self.outcome == VerificationOutcome.ACCEPTED

    @classmethod
    def accepted(cls, gates_passed: List[str]) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.ACCEPTED, gates_passed=list(gates_passed))

    @classmethod
    def rejected(
        cls,
        kind: ErrorKind,
        stage: Stage,
        reason: str,
        details: Optional[Dict[str, Any]] = None
    ) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.REJECTED, kind=kind, stage=stage, reason=reason, details=details)

    @classmethod
    def from_error(cls, error: ExecProofError) -> 'VerificationResult':
        return cls.rejected(error.kind, error.stage, error.message, error.details or None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VerificationResult':
        return cls(
            outcome=VerificationOutcome(data["outcome"]),
            kind=ErrorKind(data["kind"]) if data.get("kind") else None,
            stage=Stage(data["stage"]) if data.get("stage") else None,
            reason=data.get("reason"),
            details=data.get("details"),
            gates_passed=list(data.get("gates_passed", []))
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {"outcome": self.outcome.value, "gates_passed": self.gates_passed}
        if self.kind:
            d["kind"] = self.kind.value
        if self.stage:
            d["stage"] = self.stage.value
        if self.reason:
            d["reason"] = self.reason
        if self.details:
            d["details"] = self.details
        return d


@dataclass(frozen=True)
class SessionTranscript:
    """
    The public projection of a proof session: everything the verifier
    is allowed to see.
    """
    session_id: str
    challenge: Challenge
    binary_identity: BinaryIdentity
    commitment_value: Optional[str]
    proof: Optional[Proof]
    nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY
    attestation: Optional[Attestation] = None

    @property
    def public_inputs(self):
        return self.proof.public_inputs if self.proof else None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "session_id": self.session_id,
            "challenge": self.challenge.to_dict(),
            "binary_identity": self.binary_identity.to_dict(),
            "commitment_value": self.commitment_value,
            "proof": self.proof.to_dict() if self.proof else None,
            "nonce_binding": self.nonce_binding.value,
        }
        if self.attestation is not None:
            d["attestation"] = self.attestation.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionTranscript':
        return cls(
            session_id=require_str(data, "session_id"),
            challenge=Challenge.from_dict(data.get("challenge")),
            binary_identity=BinaryIdentity.from_dict(data["binary_identity"]),
            commitment_value=require_str(data, "commitment_value", optional=True),
            proof=Proof.from_dict(data["proof"]) if data.get("proof") else None,
            nonce_binding=NonceBinding(
                require_str(data, "nonce_binding", optional=True) or NonceBinding.DIGEST_ONLY.value
            ),
            attestation=Attestation.from_dict(data["attestation"]) if data.get("attestation") else None
        )


GateCheck = Callable[[SessionTranscript], Optional[VerificationResult]]


class ProofVerifier:
    """
    Verifier side of the protocol.

    Shares the ``ChallengeIssuer`` that minted the session's challenge;
    proofs over challenges from any other issuer are rejected.
    """

    def __init__(
        self,
        issuer: ChallengeIssuer,
        registry: ChecksumRegistry,
        backend: CircuitBackend,
        attestation_verifier: Optional[AttestationVerifier] = None,
        require_attestation: bool = False
    ):
        if require_attestation and attestation_verifier is None:
            raise ValueError("require_attestation needs an attestation_verifier")
        self.issuer = issuer
        self.registry = registry
        self.backend = backend
        self.attestation_verifier = attestation_verifier
        self.require_attestation = require_attestation
        self._commitments: Dict[str, str] = {}
        self._accepted: Set[str] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------
    # Commitment intake
    # ------------------------------------------------------------

    def record_commitment(self, challenge_id: str, commitment_value: str) -> None:
        """
        Record a prover's commitment while its challenge is live.

        Recording the same value twice is a no-op.

        Raises:
            ExecProofError: NOT_FOUND for a challenge this issuer never
                minted, EXPIRED once it has lapsed, BINDING_FAILURE while
                the challenge has not been consumed, COMMITMENT_MISMATCH for
                an attempt to replace an already recorded value
        """
        if self.issuer.get(challenge_id) is None:
            raise ExecProofError(ErrorKind.NOT_FOUND, Stage.COMMIT, f"Unknown challenge {challenge_id}")
        if self.issuer.is_expired(challenge_id):
            raise ExecProofError(ErrorKind.EXPIRED, Stage.COMMIT, f"Challenge {challenge_id} has expired")
        if not self.issuer.is_consumed(challenge_id):
            audit_log.security_event(
                "commitment_before_consume", severity="high", challenge_id=challenge_id
            )
            raise ExecProofError(
                ErrorKind.BINDING_FAILURE, Stage.COMMIT,
                f"Challenge {challenge_id} has not been consumed"
            )
        with self._lock:
            existing = self._commitments.get(challenge_id)
            if existing is not None:
                if digests_equal(existing, commitment_value):
                    return
                audit_log.security_event(
                    "commitment_substitution_attempt", severity="high", challenge_id=challenge_id
                )
                raise ExecProofError(
                    ErrorKind.COMMITMENT_MISMATCH, Stage.COMMIT,
                    f"A different commitment is already recorded for challenge {challenge_id}"
                )
            self._commitments[challenge_id] = commitment_value
        audit_log.commitment_recorded(challenge_id, commitment_value)

    def recorded_commitment(self, challenge_id: str) -> Optional[str]:
        with self._lock:
            return self._commitments.get(challenge_id)

    def evict_expired(self, retention_seconds: Optional[float] = None) -> List[str]:
        """
        Forget challenges past the retention window together with their
        recorded commitments and acceptance marks.

        Gate (a) already rejects those challenges, as expired while they
        are retained and as unknown once they are gone.
        """
        evicted = self.issuer.evict_expired(retention_seconds)
        with self._lock:
            for challenge_id in evicted:
                self._commitments.pop(challenge_id, None)
                self._accepted.discard(challenge_id)
        return evicted

    # ------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------

    def verify(self, transcript: SessionTranscript) -> VerificationResult:
        gates: List[Tuple[str, GateCheck]] = [
            ("challenge", self._gate_challenge),
            ("checksum", self._gate_checksum),
            ("circuit", self._gate_circuit),
            ("commitment", self._gate_commitment),
        ]
        challenge_id = transcript.challenge.challenge_id
        passed: List[str] = []

        for name, gate in gates:
            rejection = gate(transcript)
            if rejection is not None:
                rejection.gates_passed = passed
                self._log_decision(challenge_id, rejection)
                return rejection
            passed.append(name)

        with self._lock:
            if challenge_id in self._accepted:
                result = VerificationResult.rejected(
                    ErrorKind.ALREADY_CONSUMED, Stage.VERIFY_CHALLENGE,
                    f"A proof for challenge {challenge_id} was already accepted"
                )
                result.gates_passed = passed
                self._log_decision(challenge_id, result)
                return result
            self._accepted.add(challenge_id)

        result = VerificationResult.accepted(passed)
        self._log_decision(challenge_id, result)
        return result

    def _gate_challenge(self, transcript: SessionTranscript) -> Optional[VerificationResult]:
        challenge = transcript.challenge
        if not self.issuer.is_issued_here(challenge):
            audit_log.security_event(
                "foreign_challenge", severity="high", challenge_id=challenge.challenge_id
            )
            return VerificationResult.rejected(
                ErrorKind.NOT_FOUND, Stage.VERIFY_CHALLENGE,
                "Challenge was not issued by this verifier"
            )
        if self.issuer.is_expired(challenge.challenge_id):
            return VerificationResult.rejected(
                ErrorKind.EXPIRED, Stage.VERIFY_CHALLENGE,
                f"Challenge {challenge.challenge_id} has expired"
            )
        if not self.issuer.is_consumed(challenge.challenge_id):
            audit_log.security_event(
                "proof_before_consume", severity="high", challenge_id=challenge.challenge_id
            )
            return VerificationResult.rejected(
                ErrorKind.BINDING_FAILURE, Stage.VERIFY_CHALLENGE,
                f"Challenge {challenge.challenge_id} was never consumed"
            )
        with self._lock:
            already = challenge.challenge_id in self._accepted
        if already:
            audit_log.security_event(
                "proof_replay", severity="high", challenge_id=challenge.challenge_id
            )
            return VerificationResult.rejected(
                ErrorKind.ALREADY_CONSUMED, Stage.VERIFY_CHALLENGE,
                f"A proof for challenge {challenge.challenge_id} was already accepted"
            )
        return None

    def _gate_checksum(self, transcript: SessionTranscript) -> Optional[VerificationResult]:
        identity = transcript.binary_identity
        try:
            expected = self.registry.expected_checksum(identity.name, identity.version)
        except ExecProofError as e:
            return VerificationResult.rejected(e.kind, Stage.VERIFY_CHECKSUM, e.message)

        claims = {
            "binary_identity": identity.checksum,
            "challenge": self.issuer.get(transcript.challenge.challenge_id).binary_checksum,
        }
        if transcript.public_inputs is not None:
            claims["public_inputs"] = transcript.public_inputs.binary_checksum

        for source, claimed in claims.items():
            if not digests_equal(claimed, expected):
                return VerificationResult.rejected(
                    ErrorKind.CHECKSUM_MISMATCH, Stage.VERIFY_CHECKSUM,
                    f"Checksum from {source} does not match the registry for "
                    f"{identity.name} {identity.version}",
                    {"expected": expected, "claimed": claimed}
                )
        return None

    def _gate_circuit(self, transcript: SessionTranscript) -> Optional[VerificationResult]:
        proof = transcript.proof
        if proof is None:
            return VerificationResult.rejected(
                ErrorKind.CIRCUIT_VERIFICATION_FAILED, Stage.VERIFY_CIRCUIT,
                "Session carries no proof"
            )
        public = proof.public_inputs
        issued = self.issuer.get(transcript.challenge.challenge_id)
        if not digests_equal(public.nonce, issued.nonce_hex):
            return VerificationResult.rejected(
                ErrorKind.BINDING_FAILURE, Stage.VERIFY_CIRCUIT,
                "Proof public inputs are bound to a different nonce"
            )

        if not self.backend.verify(proof, public):
            return VerificationResult.rejected(
                ErrorKind.CIRCUIT_VERIFICATION_FAILED, Stage.VERIFY_CIRCUIT,
                "Circuit backend rejected the proof"
            )

        return self._check_attestation(transcript)

    def _check_attestation(self, transcript: SessionTranscript) -> Optional[VerificationResult]:
        public = transcript.public_inputs
        attestation = transcript.attestation

        if attestation is None:
            if public.attestation_digest is not None:
                return self._attestation_failure("Proof declares an attestation the session does not carry")
            if self.require_attestation:
                return self._attestation_failure("An execution attestation is required")
            return None

        if public.attestation_digest is None or not digests_equal(attestation.digest(), public.attestation_digest):
            return self._attestation_failure("Attestation is not the one bound into the proof")
        if attestation.context.challenge_id != transcript.challenge.challenge_id:
            return self._attestation_failure("Attestation covers a different challenge")
        if not digests_equal(attestation.context.binary_checksum, transcript.binary_identity.checksum):
            return self._attestation_failure("Attestation covers a different binary")
        if self.attestation_verifier is not None and not self.attestation_verifier.verify(attestation):
            return self._attestation_failure("Attestation evidence did not verify")
        return None

    @staticmethod
    def _attestation_failure(reason: str) -> VerificationResult:
        return VerificationResult.rejected(ErrorKind.ATTESTATION_FAILED, Stage.VERIFY_CIRCUIT, reason)

    def _gate_commitment(self, transcript: SessionTranscript) -> Optional[VerificationResult]:
        challenge_id = transcript.challenge.challenge_id
        recorded = self.recorded_commitment(challenge_id)
        if recorded is None:
            return VerificationResult.rejected(
                ErrorKind.COMMITMENT_MISMATCH, Stage.VERIFY_COMMITMENT,
                f"No commitment was recorded for challenge {challenge_id}"
            )
        declared = {
            "public_inputs": transcript.public_inputs.commitment_value,
            "session": transcript.commitment_value,
        }
        for source, value in declared.items():
            if value is None or not digests_equal(value, recorded):
                return VerificationResult.rejected(
                    ErrorKind.COMMITMENT_MISMATCH, Stage.VERIFY_COMMITMENT,
                    f"Commitment from {source} differs from the one recorded at commit time",
                    {"recorded": recorded, "declared": value}
                )
        return None

    def _log_decision(self, challenge_id: str, result: VerificationResult) -> None:
        audit_log.verification_decision(
            challenge_id,
            result.outcome.value,
            kind=result.kind.value if result.kind else None,
            stage=result.stage.value if result.stage else None,
            gates_passed=result.gates_passed
        )
