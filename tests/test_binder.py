"""
execproof Execution Binder Test Suite

Critical invariant tested:
    NO WITNESS WITHOUT A CONSUMED CHALLENGE
"""

import os
import tempfile
import unittest
from pathlib import Path

from execproof import (
    ChallengeIssuer,
    ErrorKind,
    ExecProofError,
    ExecutionBinder,
    NonceBinding,
    compute_binary_identity,
    output_digest,
    sha256_hash,
)

from support import METRICS_OUTPUT, ManualClock, make_identity


class TestOutputDigest(unittest.TestCase):

    def test_digest_is_nonce_prefixed(self):
        nonce = bytes(range(32))
        self.assertEqual(output_digest(nonce, METRICS_OUTPUT), sha256_hash(nonce + METRICS_OUTPUT))

    def test_digest_differs_per_nonce(self):
        self.assertNotEqual(
            output_digest(b"\x01" * 32, METRICS_OUTPUT),
            output_digest(b"\x02" * 32, METRICS_OUTPUT)
        )

    def test_output_alone_is_not_the_digest(self):
        self.assertNotEqual(output_digest(b"\x01" * 32, METRICS_OUTPUT), sha256_hash(METRICS_OUTPUT))

    def test_empty_nonce_refused(self):
        with self.assertRaises(ValueError):
            output_digest(b"", METRICS_OUTPUT)


class TestBind(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.issuer = ChallengeIssuer(ttl_seconds=30, clock=self.clock)
        self.binder = ExecutionBinder(clock=self.clock)
        self.identity = make_identity()
        self.challenge = self.issuer.issue(self.identity)

    def test_bind_consumed_challenge(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        witness = self.binder.bind(consumed, self.identity, METRICS_OUTPUT)

        self.assertEqual(witness.challenge_id, self.challenge.challenge_id)
        self.assertEqual(witness.binary_checksum, self.identity.checksum)
        self.assertEqual(witness.output_digest, output_digest(self.challenge.nonce, METRICS_OUTPUT))
        self.assertEqual(witness.nonce_binding, NonceBinding.DIGEST_ONLY)
        self.assertNotIn("42 MiB", repr(witness))

    def test_unconsumed_challenge_refused(self):
        with self.assertRaises(ExecProofError) as ctx:
            self.binder.bind(self.challenge, self.identity, METRICS_OUTPUT)
        self.assertEqual(ctx.exception.kind, ErrorKind.BINDING_FAILURE)

    def test_other_binary_refused(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        other = make_identity(content=b"metrics-tool build 2")
        with self.assertRaises(ExecProofError) as ctx:
            self.binder.bind(consumed, other, METRICS_OUTPUT)
        self.assertEqual(ctx.exception.kind, ErrorKind.CHECKSUM_MISMATCH)

    def test_stale_challenge_refused(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        self.clock.advance(31)
        with self.assertRaises(ExecProofError) as ctx:
            self.binder.bind(consumed, self.identity, METRICS_OUTPUT)
        self.assertEqual(ctx.exception.kind, ErrorKind.STALE_CHALLENGE)

    def test_non_bytes_output_refused(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        with self.assertRaises(TypeError):
            self.binder.bind(consumed, self.identity, "42 MiB, temp 65C")

    def test_check_witness(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        witness = self.binder.bind(consumed, self.identity, METRICS_OUTPUT)

        self.binder.check_witness(witness, self.challenge.nonce)
        with self.assertRaises(ExecProofError) as ctx:
            self.binder.check_witness(witness, b"\x00" * 32)
        self.assertEqual(ctx.exception.kind, ErrorKind.BINDING_FAILURE)


class TestExecutionRequest(unittest.TestCase):

    def setUp(self):
        self.issuer = ChallengeIssuer(clock=ManualClock())
        self.binder = ExecutionBinder()
        self.identity = make_identity()
        self.challenge = self.issuer.issue(self.identity)

    def test_digest_only_leaves_args_alone(self):
        req = self.binder.execution_request(self.challenge, self.identity, ["--json"])
        self.assertEqual(req.args, ["--json"])
        self.assertEqual(req.challenge_tag, self.challenge.nonce_hex)
        self.assertEqual(req.binary_path, self.identity.path)

    def test_input_and_digest_appends_nonce(self):
        req = self.binder.execution_request(
            self.challenge, self.identity, ["--json"], NonceBinding.INPUT_AND_DIGEST
        )
        self.assertEqual(req.args, ["--json", self.challenge.nonce_hex])

    def test_identity_without_path_refused(self):
        identity = make_identity(path=None)
        with self.assertRaises(ValueError):
            self.binder.execution_request(self.challenge, identity)


class TestBinaryIdentity(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.path = Path(tmp.name) / "metrics-tool"
        self.path.write_bytes(b"metrics-tool build 1")
        self.binder = ExecutionBinder()

    def test_checksum_recomputed_from_file(self):
        identity = self.binder.verify_binary_identity(self.path, name="metrics-tool", version="1.0.0")
        self.assertEqual(identity.checksum, sha256_hash(b"metrics-tool build 1"))
        self.assertEqual(identity.name, "metrics-tool")

    def test_default_name_is_file_name(self):
        identity = compute_binary_identity(self.path)
        self.assertEqual(identity.name, "metrics-tool")
        self.assertEqual(identity.version, "unversioned")

    def test_claimed_checksum_not_trusted(self):
        claimed = make_identity(content=b"something else", path=str(self.path))
        with self.assertRaises(ExecProofError) as ctx:
            self.binder.check_binary_identity(claimed)
        self.assertEqual(ctx.exception.kind, ErrorKind.CHECKSUM_MISMATCH)

    def test_patched_binary_detected(self):
        claimed = compute_binary_identity(self.path, version="1.0.0")
        with open(self.path, "ab") as f:
            f.write(b"\x90")
        with self.assertRaises(ExecProofError):
            self.binder.check_binary_identity(claimed)

    def test_missing_binary(self):
        with self.assertRaises(FileNotFoundError):
            compute_binary_identity(os.path.join(str(self.path.parent), "missing"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
