#!/usr/bin/env python3
"""
execproof Example - Proving a Metrics Tool Run

A monitoring agent runs a fixed, argument-insensitive metrics binary on a
remote host and must convince a verifier that today's reading really came
from the released build, without disclosing the reading itself.

The release process signs the binary's checksum, the verifier loads only
signed entries, and an attestor vouches for the execution environment.

Run with: python examples/metrics_tool_example.py
"""

import json
import stat
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict

from execproof import (
    ChallengeIssuer,
    Ed25519AttestationVerifier,
    Ed25519Attestor,
    ExecProofError,
    KeyPair,
    NonceBinding,
    ProofVerifier,
    ReferenceCircuitBackend,
    SessionManager,
    SubprocessSandbox,
    compute_binary_identity,
    load_signed_registry,
    sign_registry_entry,
)
from execproof.logging_config import configure_logging


METRICS_SCRIPT = """#!/bin/sh
echo "42 MiB, temp 65C"
"""


def install_metrics_tool(directory: Path) -> Path:
    """Drop a stand-in metrics binary on disk."""
    path = directory / "metrics-tool"
    path.write_text(METRICS_SCRIPT)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def release_registry(identity, release_key: KeyPair):
    """
    Simulate the trusted release pipeline.

    In production the signed entry would be published with the build and
    fetched by the verifier; only the release public key is configured
    locally.
    """
    entry = sign_registry_entry(identity, release_key)
    trusted = {release_key.key_id: release_key.public_key_b64()}
    return load_signed_registry([entry], trusted), entry


def summarize(result) -> Dict[str, Any]:
    summary = {"outcome": result.outcome.value, "gates_passed": result.gates_passed}
    if not result.is_accepted():
        summary["kind"] = result.kind.value
        summary["stage"] = result.stage.value
        summary["reason"] = result.reason
    return summary


def main():
    configure_logging("WARNING", json_format=False)

    if sys.platform.startswith("win"):
        print("This example runs a shell script and needs a POSIX host.")
        return 1

    with tempfile.TemporaryDirectory() as tmp:
        binary = install_metrics_tool(Path(tmp))
        identity = compute_binary_identity(binary, name="metrics-tool", version="1.4.2")

        print("=" * 60)
        print("Release")
        print("=" * 60)
        release_key = KeyPair.generate("kid:release-2026-01")
        registry, entry = release_registry(identity, release_key)
        print(json.dumps(entry, indent=2))

        attestor = Ed25519Attestor(key_id="kid:host-attestor-07")
        issuer = ChallengeIssuer()
        verifier = ProofVerifier(
            issuer,
            registry,
            ReferenceCircuitBackend(),
            attestation_verifier=Ed25519AttestationVerifier.for_attestor(attestor),
            require_attestation=True
        )

        with SessionManager(issuer, verifier, attestor=attestor) as sessions:
            print("\n" + "=" * 60)
            print("Prover session")
            print("=" * 60)

            session_id = sessions.start_session(identity, nonce_binding=NonceBinding.DIGEST_ONLY)
            challenge = sessions.challenge(session_id)
            print(f"Challenge {challenge.challenge_id} expires {challenge.expires_at.isoformat()}")

            try:
                sessions.run_execution(session_id, SubprocessSandbox(timeout_seconds=5)).result()
                commitment = sessions.commit(session_id)
                print(f"Commitment published: {commitment}")
                proof = sessions.finalize_async(session_id).result()
            except ExecProofError as e:
                print(f"Session failed: {e}")
                return 1

            print(f"Proof backend: {proof.backend_id}")
            print(json.dumps(proof.public_inputs.to_dict(), indent=2))

            print("\n" + "=" * 60)
            print("Verifier decision")
            print("=" * 60)
            result = sessions.verify(session_id)
            print(json.dumps(summarize(result), indent=2))
            print(f"Session status: {sessions.status(session_id).value}")

            print("\n" + "=" * 60)
            print("Replay of the same transcript")
            print("=" * 60)
            replay = verifier.verify(sessions.transcript(session_id))
            print(json.dumps(summarize(replay), indent=2))

    return 0 if result.is_accepted() else 1


if __name__ == "__main__":
    sys.exit(main())
