"""
Shared fixtures for the execproof test suites.
"""

import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from execproof import (
    BinaryIdentity,
    CallableSandbox,
    ChallengeIssuer,
    InMemoryChecksumRegistry,
    ProofVerifier,
    ReferenceCircuitBackend,
    SessionManager,
    sha256_hash,
)

METRICS_OUTPUT = b"42 MiB, temp 65C"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2026, 1, 14, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)


def make_identity(name="metrics-tool", version="1.0.0", content=b"metrics-tool build 1", path="/opt/tools/metrics-tool"):
    return BinaryIdentity(name=name, version=version, checksum=sha256_hash(content), path=path)


def fixed_output_sandbox(output=METRICS_OUTPUT, exit_status=0):
    """Sandbox standing in for an argument-insensitive binary."""
    return CallableSandbox(lambda path, argv, tag: (output, exit_status))


def build_stack(ttl_seconds=30, identity=None, register=True, attestor=None, attestation_verifier=None,
                require_attestation=False, max_workers=2, retention_seconds=None):
    """
    Wire up issuer, registry, backend, verifier and session manager on a
    manual clock.
    """
    clock = ManualClock()
    identity = identity or make_identity()
    registry = InMemoryChecksumRegistry()
    if register:
        registry.register_identity(identity)
    issuer = ChallengeIssuer(ttl_seconds=ttl_seconds, clock=clock)
    backend = ReferenceCircuitBackend()
    verifier = ProofVerifier(
        issuer, registry, backend,
        attestation_verifier=attestation_verifier,
        require_attestation=require_attestation
    )
    sessions = SessionManager(
        issuer, verifier, attestor=attestor, max_workers=max_workers, retention_seconds=retention_seconds
    )
    return SimpleNamespace(
        clock=clock,
        identity=identity,
        registry=registry,
        issuer=issuer,
        backend=backend,
        verifier=verifier,
        sessions=sessions,
    )


def run_to_proof(stack, output=METRICS_OUTPUT, identity=None):
    """Drive a fresh session up to PROOF_SUBMITTED and return its id."""
    sid = stack.sessions.start_session(identity or stack.identity)
    stack.sessions.submit_execution(sid, output)
    stack.sessions.finalize(sid)
    return sid
