"""
execproof: Challenge-Bound Proofs of Binary Execution

Version: 0.1.0

Proves that a specific binary, identified by its SHA-256 checksum, produced
a given output in response to a fresh verifier challenge, without
revealing the output.

A prover cannot replay an old proof or precompute one before the
challenge exists:
    output_digest = SHA-256(nonce || raw_output)
    commitment    = SHA-256(tag || canonical(witness) || blinding)
and the commitment is published while the challenge is still live.

Usage:
    from execproof import (
        ChallengeIssuer,
        InMemoryChecksumRegistry,
        ProofVerifier,
        ReferenceCircuitBackend,
        SessionManager,
        SubprocessSandbox,
        compute_binary_identity,
    )

    identity = compute_binary_identity("./metrics-tool", version="1.0.0")
    registry = InMemoryChecksumRegistry()
    registry.register_identity(identity)

    issuer = ChallengeIssuer()
    verifier = ProofVerifier(issuer, registry, ReferenceCircuitBackend())

    with SessionManager(issuer, verifier) as sessions:
        session_id = sessions.start_session(identity)
        sessions.run_execution(session_id, SubprocessSandbox()).result()
        sessions.finalize(session_id)
        result = sessions.verify(session_id)

    if result.is_accepted():
        ...
    else:
        print(result.kind, result.stage, result.reason)
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    EntropyUnavailableError,
    ErrorKind,
    ExecProofError,
    Stage,
)

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import (
    sha256_hash,
    object_hash,
    output_digest,
    file_checksum,
    digests_equal,
    verify_hash,
)

# Binary identity
from .identity import BinaryIdentity, compute_binary_identity

# Challenges
from .challenge import (
    Challenge,
    ChallengeIssuer,
    ChallengeState,
    ChallengeStore,
    InMemoryChallengeStore,
)

# Binding
from .binder import (
    ExecutionBinder,
    ExecutionRequest,
    ExecutionWitness,
    NonceBinding,
)

# Commitments
from .commitment import (
    Commitment,
    HashCommit,
    commit,
    open_commitment,
)

# Circuit backends
from .backends import (
    CircuitBackend,
    PrivateWitness,
    Proof,
    PublicInputs,
    ReferenceCircuitBackend,
    check_circuit_constraints,
)

# Attestation
from .attestation import (
    Attestation,
    AttestationVerifier,
    Attestor,
    Ed25519AttestationVerifier,
    Ed25519Attestor,
    ExecutionContext,
)

# Sandboxes
from .sandbox import (
    CallableSandbox,
    ExecutionResult,
    Sandbox,
    SubprocessSandbox,
)

# Registries
from .registry import (
    ChecksumRegistry,
    InMemoryChecksumRegistry,
    JsonFileChecksumRegistry,
    load_registry,
    load_signed_registry,
    save_registry,
    sign_registry_entry,
)

# Verifier
from .verifier import (
    ProofVerifier,
    SessionTranscript,
    VerificationOutcome,
    VerificationResult,
)

# Sessions
from .session import (
    ProofSession,
    SessionManager,
    SessionStatus,
)

# Signing
from .signing import (
    KeyPair,
    load_key_pair,
    save_key_pair,
    verify_signature,
)


__all__ = [
    # Version
    "__version__",

    # Errors
    "EntropyUnavailableError",
    "ErrorKind",
    "ExecProofError",
    "Stage",

    # Canonicalization
    "canonicalize",
    "canonicalize_str",

    # Hashing
    "sha256_hash",
    "object_hash",
    "output_digest",
    "file_checksum",
    "digests_equal",
    "verify_hash",

    # Identity
    "BinaryIdentity",
    "compute_binary_identity",

    # Challenges
    "Challenge",
    "ChallengeIssuer",
    "ChallengeState",
    "ChallengeStore",
    "InMemoryChallengeStore",

    # Binding
    "ExecutionBinder",
    "ExecutionRequest",
    "ExecutionWitness",
    "NonceBinding",

    # Commitments
    "Commitment",
    "HashCommit",
    "commit",
    "open_commitment",

    # Circuit backends
    "CircuitBackend",
    "PrivateWitness",
    "Proof",
    "PublicInputs",
    "ReferenceCircuitBackend",
    "check_circuit_constraints",

    # Attestation
    "Attestation",
    "AttestationVerifier",
    "Attestor",
    "Ed25519AttestationVerifier",
    "Ed25519Attestor",
    "ExecutionContext",

    # Sandboxes
    "CallableSandbox",
    "ExecutionResult",
    "Sandbox",
    "SubprocessSandbox",

    # Registries
    "ChecksumRegistry",
    "InMemoryChecksumRegistry",
    "JsonFileChecksumRegistry",
    "load_registry",
    "load_signed_registry",
    "save_registry",
    "sign_registry_entry",

    # Verifier
    "ProofVerifier",
    "SessionTranscript",
    "VerificationOutcome",
    "VerificationResult",

    # Sessions
    "ProofSession",
    "SessionManager",
    "SessionStatus",

    # Signing
    "KeyPair",
    "load_key_pair",
    "save_key_pair",
    "verify_signature",
]
