"""
execproof Circuit Backend Interface

The proving system is an external collaborator. The core only needs

    prove(private_witness, public_inputs) -> Proof
    verify(proof, public_inputs) -> bool

The circuit it proves asserts, over the private witness and blinding:

    commitment_value == commit(witness, blinding)
    output_digest    == SHA-256(nonce || raw_output)
    binary_checksum  == expected checksum

``ReferenceCircuitBackend`` evaluates those constraints in the clear on
the prover side and signs the public inputs with Ed25519. It is not zero
knowledge and not sound against a dishonest prover holding the key; it
exists so the binding protocol can be driven end to end in tests, demos
and integrations before a real proving system is attached.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .binder import ExecutionWitness
from .commitment import Commitment, open_commitment
from .errors import ErrorKind, ExecProofError, Stage
from .hashing import digests_equal, output_digest
from .signing import KeyPair, verify_object_signature
from .util import require_str


@dataclass(frozen=True)
class PublicInputs:
    """Values the verifier sees and checks the proof against."""
    nonce: str
    binary_checksum: str
    commitment_value: str
    attestation_digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "nonce": self.nonce,
            "binary_checksum": self.binary_checksum,
            "commitment_value": self.commitment_value,
        }
        if self.attestation_digest is not None:
            d["attestation_digest"] = self.attestation_digest
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PublicInputs':
        return cls(
            nonce=require_str(data, "nonce"),
            binary_checksum=require_str(data, "binary_checksum"),
            commitment_value=require_str(data, "commitment_value"),
            attestation_digest=require_str(data, "attestation_digest", optional=True)
        )


@dataclass(frozen=True)
class PrivateWitness:
    """Everything the prover feeds the circuit that the verifier never sees."""
    witness: ExecutionWitness
    blinding: bytes = field(repr=False)


@dataclass(frozen=True)
class Proof:
    """Opaque proof artifact plus the public inputs it was produced for."""
    backend_id: str
    key_id: str
    proof_data: str
    public_inputs: PublicInputs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "key_id": self.key_id,
            "proof_data": self.proof_data,
            "public_inputs": self.public_inputs.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Proof':
        return cls(
            backend_id=require_str(data, "backend_id"),
            key_id=require_str(data, "key_id"),
            proof_data=require_str(data, "proof_data"),
            public_inputs=PublicInputs.from_dict(data.get("public_inputs"))
        )


class CircuitBackend(ABC):
    """Interface to an external proving system."""

    @abstractmethod
    def prove(self, private_witness: PrivateWitness, public_inputs: PublicInputs) -> Proof:
        """
        Produce a proof. May be slow and CPU-bound.

        Raises:
            ExecProofError: if the witness does not satisfy the circuit
        """

    @abstractmethod
    def verify(self, proof: Proof, public_inputs: PublicInputs) -> bool:
        """Check ``proof`` against ``public_inputs``. Never raises."""


def check_circuit_constraints(private_witness: PrivateWitness, public_inputs: PublicInputs) -> None:
    """
    Evaluate the circuit's constraints outside a circuit.

    Raises:
        ExecProofError: COMMITMENT_MISMATCH, BINDING_FAILURE or
            CHECKSUM_MISMATCH for the first unsatisfied constraint
    """
    witness = private_witness.witness
    commitment = Commitment(value=public_inputs.commitment_value, blinding=private_witness.blinding)
    if not open_commitment(commitment, witness, private_witness.blinding):
        raise ExecProofError(
            ErrorKind.COMMITMENT_MISMATCH, Stage.PROVE,
            "Commitment does not open to the witness"
        )

    try:
        nonce = bytes.fromhex(public_inputs.nonce)
    except ValueError as e:
        raise ExecProofError(ErrorKind.BINDING_FAILURE, Stage.PROVE, f"Malformed nonce: {e}") from e
    if not digests_equal(output_digest(nonce, witness.raw_output), witness.output_digest):
        raise ExecProofError(
            ErrorKind.BINDING_FAILURE, Stage.PROVE,
            "Output digest is not bound to the challenge nonce"
        )

    if not digests_equal(witness.binary_checksum, public_inputs.binary_checksum):
        raise ExecProofError(
            ErrorKind.CHECKSUM_MISMATCH, Stage.PROVE,
            "Witness binary checksum differs from the expected checksum"
        )


class ReferenceCircuitBackend(CircuitBackend):
    """Constraint check in the clear plus an Ed25519 signature over public inputs."""

    BACKEND_ID = "reference-ed25519/v1"

    def __init__(self, key_pair: Optional[KeyPair] = None, key_id: str = "kid:execproof-reference-prover"):
        self.key_pair = key_pair or KeyPair.generate(key_id)

    def _statement(self, public_inputs: PublicInputs) -> Dict[str, Any]:
        return {
            "backend_id": self.BACKEND_ID,
            "key_id": self.key_pair.key_id,
            "public_inputs": public_inputs.to_dict(),
        }

    def prove(self, private_witness: PrivateWitness, public_inputs: PublicInputs) -> Proof:
        check_circuit_constraints(private_witness, public_inputs)
        return Proof(
            backend_id=self.BACKEND_ID,
            key_id=self.key_pair.key_id,
            proof_data=self.key_pair.sign_object(self._statement(public_inputs)),
            public_inputs=public_inputs
        )

    def verify(self, proof: Proof, public_inputs: PublicInputs) -> bool:
        if proof.backend_id != self.BACKEND_ID or proof.key_id != self.key_pair.key_id:
            return False
        try:
            statement = self._statement(public_inputs)
        except (AttributeError, TypeError, ValueError):
            return False
        return verify_object_signature(statement, proof.proof_data, self.key_pair.verify_key)
