#!/usr/bin/env python3
"""
execproof Command Line Interface

Usage:
    execproof identity --binary <file> [--name <name>] [--version <version>]
    execproof keygen [--key-id <kid>] [--output <file>]
    execproof register --binary <file> --name <name> --version <version> [--registry <file>] [--key <file>]
    execproof run --binary <file> --name <name> --version <version> [--registry <file>] [--nonce-arg] [-- args...]
    execproof demo
"""

import argparse
import json
import sys
import tempfile
from datetime import datetime
from pathlib import Path

from . import config
from .logging_config import configure_logging


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)


def cmd_identity(args):
    """Hash a binary and print its identity."""
    from execproof import compute_binary_identity

    identity = compute_binary_identity(args.binary, name=args.name, version=args.version)
    data = identity.to_dict()
    if args.output:
        save_json(data, args.output)
        print(f"Identity saved to: {args.output}")
    else:
        print(json.dumps(data, indent=2))
    return 0


def cmd_keygen(args):
    """Generate an Ed25519 key pair."""
    from execproof import KeyPair, save_key_pair

    key_id = args.key_id or f"kid:execproof-{datetime.now().strftime('%Y%m%d')}-001"
    key_pair = KeyPair.generate(key_id)

    if args.output:
        save_key_pair(key_pair, args.output)
        print(f"Private key saved to: {args.output}", file=sys.stderr)

    print(json.dumps(key_pair.to_trust_entry(), indent=2))
    return 0


def cmd_register(args):
    """Add a binary's checksum to a registry file."""
    from execproof import compute_binary_identity, load_key_pair, load_registry, save_registry, sign_registry_entry

    identity = compute_binary_identity(args.binary, name=args.name, version=args.version)
    registry = load_registry(args.registry)
    try:
        registry.register_identity(identity)
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    save_registry(registry, args.registry)
    print(f"Registered {identity.name} {identity.version}: {identity.checksum}", file=sys.stderr)

    if args.key:
        entry = sign_registry_entry(identity, load_key_pair(args.key))
        print(json.dumps(entry, indent=2))
    return 0


def cmd_run(args):
    """Run a binary under a fresh challenge and verify the resulting proof."""
    from execproof import (
        ChallengeIssuer,
        ExecProofError,
        NonceBinding,
        ProofVerifier,
        ReferenceCircuitBackend,
        SessionManager,
        SubprocessSandbox,
        compute_binary_identity,
        load_registry,
    )

    identity = compute_binary_identity(args.binary, name=args.name, version=args.version)
    registry = load_registry(args.registry)
    issuer = ChallengeIssuer(ttl_seconds=args.ttl)
    verifier = ProofVerifier(issuer, registry, ReferenceCircuitBackend())
    binding = NonceBinding.INPUT_AND_DIGEST if args.nonce_arg else NonceBinding.DIGEST_ONLY
    sandbox = SubprocessSandbox(timeout_seconds=args.timeout, export_tag=True)
    binary_args = [a for a in args.binary_args if a != "--"]

    with SessionManager(issuer, verifier) as sessions:
        session_id = sessions.start_session(identity, nonce_binding=binding)
        try:
            sessions.run_execution(session_id, sandbox, binary_args).result()
            sessions.finalize(session_id)
        except ExecProofError as e:
            print(json.dumps(e.to_dict(), indent=2))
            print(f"\n✗ Session {session_id} failed: {e.kind.value}", file=sys.stderr)
            return 1

        result = sessions.verify(session_id)
        output = {
            "transcript": sessions.transcript(session_id).to_dict(),
            "verification": result.to_dict(),
        }

    if args.output:
        save_json(output, args.output)
        print(f"Transcript saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(output, indent=2))

    if result.is_accepted():
        print(f"\n✓ VERIFIED", file=sys.stderr)
        return 0
    print(f"\n✗ REJECTED at {result.stage.value}: {result.kind.value}", file=sys.stderr)
    return 1


def cmd_demo(args):
    """Run a demonstration of the binding protocol."""
    from execproof import (
        BinaryIdentity,
        CallableSandbox,
        ChallengeIssuer,
        InMemoryChecksumRegistry,
        ProofVerifier,
        ReferenceCircuitBackend,
        SessionManager,
        compute_binary_identity,
        output_digest,
    )

    print("=" * 60)
    print("execproof Protocol Demonstration")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        binary = Path(tmp) / "metrics-tool"
        binary.write_bytes(b"#!/bin/sh\necho '42 MiB, temp 65C'\n")
        identity = compute_binary_identity(binary, name="metrics-tool", version="1.0.0")

        registry = InMemoryChecksumRegistry()
        registry.register_identity(identity)
        issuer = ChallengeIssuer()
        verifier = ProofVerifier(issuer, registry, ReferenceCircuitBackend())
        sandbox = CallableSandbox(lambda path, argv, tag: (b"42 MiB, temp 65C", 0))

        print(f"\nBinary: {identity.name} {identity.version}")
        print(f"Checksum: {identity.checksum}")

        with SessionManager(issuer, verifier) as sessions:
            # Scenario 1: honest run
            print("\n" + "-" * 60)
            print("Scenario 1: Honest execution under a fresh challenge")
            print("-" * 60)

            sid = sessions.start_session(identity)
            challenge = sessions.challenge(sid)
            sessions.run_execution(sid, sandbox).result()
            proof = sessions.finalize(sid)
            result = sessions.verify(sid)

            print(f"Challenge: {challenge.challenge_id}")
            print(f"Output digest: {output_digest(challenge.nonce, b'42 MiB, temp 65C')}")
            print(f"Commitment: {proof.public_inputs.commitment_value}")
            print(f"Session: {sessions.status(sid).value}")
            print(f"Decision: {result.outcome.value} (gates {', '.join(result.gates_passed)})")

            # Scenario 2: replaying the accepted transcript
            print("\n" + "-" * 60)
            print("Scenario 2: Replaying the accepted transcript")
            print("-" * 60)

            replay = verifier.verify(sessions.transcript(sid))
            print(f"Decision: {replay.outcome.value}")
            print(f"  Failed: {replay.stage.value} - {replay.kind.value}")

            # Scenario 3: registry expects a different build
            print("\n" + "-" * 60)
            print("Scenario 3: Claimed checksum differs from the registry")
            print("-" * 60)

            patched = BinaryIdentity(
                name=identity.name,
                version="1.0.1",
                checksum=identity.checksum,
                path=identity.path
            )
            registry.register("metrics-tool", "1.0.1", "sha256:" + "0" * 64)

            sid = sessions.start_session(patched)
            sessions.run_execution(sid, sandbox).result()
            sessions.finalize(sid)
            result = sessions.verify(sid)

            print(f"Session: {sessions.status(sid).value}")
            print(f"Decision: {result.outcome.value}")
            print(f"  Failed: {result.stage.value} - {result.kind.value}")
            print(f"    Expected: {result.details['expected']}")
            print(f"    Claimed:  {result.details['claimed']}")

    print("\n" + "=" * 60)
    print("Demonstration complete.")
    print("=" * 60)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="execproof",
        description="execproof binary execution proof CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  execproof demo                                   Run demonstration
  execproof identity -b ./metrics-tool -n metrics-tool -V 1.0.0
  execproof keygen -k kid:release-2026 -o release.key.json
  execproof register -b ./metrics-tool -n metrics-tool -V 1.0.0 -r registry.json
  execproof run -b ./metrics-tool -n metrics-tool -V 1.0.0 -r registry.json -- --verbose
        """
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: EXECPROOF_LOG_LEVEL, or DEBUG with EXECPROOF_DEBUG)")
    parser.add_argument("--plain-logs", action="store_true", help="Human-readable logs instead of JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # identity
    identity_parser = subparsers.add_parser("identity", help="Compute a binary identity")
    identity_parser.add_argument("-b", "--binary", required=True, help="Path to the binary")
    identity_parser.add_argument("-n", "--name", help="Registry name (defaults to file name)")
    identity_parser.add_argument("-V", "--version", default="unversioned", help="Registry version label")
    identity_parser.add_argument("-o", "--output", help="Output file for the identity")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate an Ed25519 key pair")
    keygen_parser.add_argument("-k", "--key-id", help="Key identifier")
    keygen_parser.add_argument("-o", "--output", help="Output file for the private key")

    # register
    register_parser = subparsers.add_parser("register", help="Register a binary checksum")
    register_parser.add_argument("-b", "--binary", required=True, help="Path to the binary")
    register_parser.add_argument("-n", "--name", required=True, help="Registry name")
    register_parser.add_argument("-V", "--version", required=True, help="Registry version label")
    register_parser.add_argument("-r", "--registry", default=config.REGISTRY_PATH, help="Registry JSON file")
    register_parser.add_argument("-k", "--key", help="Release key file; prints a signed entry")

    # run
    run_parser = subparsers.add_parser("run", help="Prove and verify one execution")
    run_parser.add_argument("-b", "--binary", required=True, help="Path to the binary")
    run_parser.add_argument("-n", "--name", required=True, help="Registry name")
    run_parser.add_argument("-V", "--version", required=True, help="Registry version label")
    run_parser.add_argument("-r", "--registry", default=config.REGISTRY_PATH, help="Registry JSON file")
    run_parser.add_argument("--nonce-arg", action="store_true", help="Pass the nonce as the last argument")
    run_parser.add_argument("--ttl", type=float, help="Challenge TTL in seconds")
    run_parser.add_argument("--timeout", type=float, help="Sandbox timeout in seconds")
    run_parser.add_argument("-o", "--output", help="Output file for transcript and decision")
    run_parser.add_argument("binary_args", nargs=argparse.REMAINDER, help="Arguments for the binary")

    # demo
    subparsers.add_parser("demo", help="Run demonstration")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = args.log_level or ("DEBUG" if config.is_debug() else config.LOG_LEVEL)
    configure_logging(log_level, json_format=config.LOG_JSON and not args.plain_logs)

    commands = {
        "identity": cmd_identity,
        "keygen": cmd_keygen,
        "register": cmd_register,
        "run": cmd_run,
        "demo": cmd_demo,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2
    try:
        return command(args)
    except FileNotFoundError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
