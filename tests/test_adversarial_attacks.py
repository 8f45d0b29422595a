"""
execproof Adversarial Attack Simulation Suite

Each test is an attempt by a dishonest prover to obtain an accepted proof
without having run the registered binary under the live challenge:
- replaying an old proof against a new challenge
- precomputing output before the challenge existed
- running a patched binary
- resubmitting after the window closed
- swapping commitments after the fact

Tests are designed to FAIL if the defense is inadequate.
"""

import unittest
from dataclasses import replace

from execproof import (
    ChallengeState,
    ErrorKind,
    ExecProofError,
    ExecutionWitness,
    HashCommit,
    NonceBinding,
    PrivateWitness,
    PublicInputs,
    SessionStatus,
    SessionTranscript,
    Stage,
    VerificationOutcome,
    output_digest,
    sha256_hash,
)

from support import METRICS_OUTPUT, build_stack, make_identity, run_to_proof


class TestReplayAttacks(unittest.TestCase):

    def setUp(self):
        self.stack = build_stack()
        self.addCleanup(self.stack.sessions.shutdown)
        self.sessions = self.stack.sessions

    def test_old_proof_against_new_session(self):
        """ATTACK: reuse the proof from challenge c1 in a session for c2."""
        s1 = run_to_proof(self.stack)
        self.assertTrue(self.sessions.verify(s1).is_accepted())
        old = self.sessions.transcript(s1)

        s2 = self.sessions.start_session(self.stack.identity)
        self.sessions.submit_execution(s2, METRICS_OUTPUT)
        c2 = self.sessions.challenge(s2)
        replayed = replace(self.sessions.transcript(s2), proof=old.proof, commitment_value=old.commitment_value)

        result = self.stack.verifier.verify(replayed)
        self.assertEqual(result.outcome, VerificationOutcome.REJECTED)
        self.assertEqual(result.kind, ErrorKind.BINDING_FAILURE)
        self.assertNotEqual(old.challenge.nonce, c2.nonce)

    def test_old_proof_relabelled_with_new_nonce(self):
        """ATTACK: rewrite the old proof's public nonce to the new one."""
        s1 = run_to_proof(self.stack)
        old = self.sessions.transcript(s1)

        s2 = self.sessions.start_session(self.stack.identity)
        self.sessions.submit_execution(s2, METRICS_OUTPUT)
        c2 = self.sessions.challenge(s2)
        relabelled = replace(old.proof, public_inputs=replace(old.proof.public_inputs, nonce=c2.nonce_hex))
        attack = replace(self.sessions.transcript(s2), proof=relabelled, commitment_value=old.commitment_value)

        result = self.stack.verifier.verify(attack)
        self.assertEqual(result.kind, ErrorKind.CIRCUIT_VERIFICATION_FAILED)

    def test_accepted_transcript_replayed(self):
        """ATTACK: present the same accepted transcript a second time."""
        sid = run_to_proof(self.stack)
        transcript = self.sessions.transcript(sid)
        self.assertTrue(self.stack.verifier.verify(transcript).is_accepted())

        result = self.stack.verifier.verify(transcript)
        self.assertEqual(result.kind, ErrorKind.ALREADY_CONSUMED)

    def test_resubmission_after_expiry(self):
        """ATTACK: resubmit a valid (proof, public inputs) once the window closed."""
        sid = run_to_proof(self.stack)
        self.assertTrue(self.sessions.verify(sid).is_accepted())
        transcript = self.sessions.transcript(sid)

        self.stack.clock.advance(31)
        result = self.stack.verifier.verify(transcript)
        self.assertEqual(result.outcome, VerificationOutcome.REJECTED)
        self.assertEqual(result.kind, ErrorKind.EXPIRED)


class TestPrecomputationAttacks(unittest.TestCase):

    def setUp(self):
        self.stack = build_stack()
        self.addCleanup(self.stack.sessions.shutdown)
        self.sessions = self.stack.sessions

    def test_witness_built_before_challenge(self):
        """ATTACK: digest the known output with a guessed nonce ahead of time."""
        guessed_nonce = b"\x11" * 32
        precomputed = ExecutionWitness(
            challenge_id="not-yet-issued",
            binary_checksum=self.stack.identity.checksum,
            raw_output=METRICS_OUTPUT,
            output_digest=output_digest(guessed_nonce, METRICS_OUTPUT),
            captured_at=self.stack.clock(),
            nonce_binding=NonceBinding.DIGEST_ONLY
        )
        commitment = HashCommit().commit(precomputed)

        sid = self.sessions.start_session(self.stack.identity)
        challenge = self.sessions.challenge(sid)
        public = PublicInputs(
            nonce=challenge.nonce_hex,
            binary_checksum=self.stack.identity.checksum,
            commitment_value=commitment.value
        )
        with self.assertRaises(ExecProofError) as ctx:
            self.stack.backend.prove(PrivateWitness(precomputed, commitment.blinding), public)
        self.assertEqual(ctx.exception.kind, ErrorKind.BINDING_FAILURE)

    def test_plain_output_hash_is_not_a_binding(self):
        """ATTACK: use the public hash of the deterministic output as the digest."""
        sid = self.sessions.start_session(self.stack.identity)
        self.sessions.submit_execution(sid, METRICS_OUTPUT)
        witness = self.sessions.get_session(sid).witness

        self.assertNotEqual(witness.output_digest, sha256_hash(METRICS_OUTPUT))

    def test_bind_before_consume_impossible(self):
        """ATTACK: bind output to a challenge that was never consumed."""
        challenge = self.stack.issuer.issue(self.stack.identity)
        with self.assertRaises(ExecProofError) as ctx:
            self.sessions.binder.bind(challenge, self.stack.identity, METRICS_OUTPUT)
        self.assertEqual(ctx.exception.kind, ErrorKind.BINDING_FAILURE)

    def test_proof_over_never_consumed_challenge(self):
        """ATTACK: claim the challenge is consumed without ever consuming it."""
        challenge = self.stack.issuer.issue(self.stack.identity)
        claimed = replace(challenge, state=ChallengeState.CONSUMED)
        witness = self.sessions.binder.bind(claimed, self.stack.identity, METRICS_OUTPUT)
        commitment = HashCommit().commit(witness)

        with self.assertRaises(ExecProofError) as ctx:
            self.stack.verifier.record_commitment(challenge.challenge_id, commitment.value)
        self.assertEqual(ctx.exception.kind, ErrorKind.BINDING_FAILURE)

        public = PublicInputs(
            nonce=challenge.nonce_hex,
            binary_checksum=self.stack.identity.checksum,
            commitment_value=commitment.value
        )
        proof = self.stack.backend.prove(PrivateWitness(witness, commitment.blinding), public)
        transcript = SessionTranscript(
            session_id="detached",
            challenge=claimed,
            binary_identity=self.stack.identity,
            commitment_value=commitment.value,
            proof=proof
        )
        result = self.stack.verifier.verify(transcript)
        self.assertEqual(result.kind, ErrorKind.BINDING_FAILURE)
        self.assertEqual(result.stage, Stage.VERIFY_CHALLENGE)
        self.assertEqual(result.gates_passed, [])
        self.assertEqual(self.stack.issuer.store.get(challenge.challenge_id).state, ChallengeState.ISSUED)


class TestBinarySubstitution(unittest.TestCase):

    def test_registry_disagrees_with_claimed_checksum(self):
        """ATTACK: run a patched build D and claim the release name and version of D'."""
        patched = make_identity(content=b"metrics-tool build 1 (patched)")
        release = make_identity(content=b"metrics-tool build 1")
        stack = build_stack(identity=patched, register=False)
        self.addCleanup(stack.sessions.shutdown)
        stack.registry.register_identity(release)

        sid = run_to_proof(stack)
        transcript = stack.sessions.transcript(sid)
        self.assertTrue(stack.backend.verify(transcript.proof, transcript.public_inputs))

        result = stack.sessions.verify(sid)
        self.assertEqual(result.kind, ErrorKind.CHECKSUM_MISMATCH)
        self.assertEqual(result.stage, Stage.VERIFY_CHECKSUM)
        self.assertEqual(stack.sessions.status(sid), SessionStatus.REJECTED)

    def test_output_from_other_binary_challenge(self):
        """ATTACK: bind output under a challenge issued for a different binary."""
        stack = build_stack()
        self.addCleanup(stack.sessions.shutdown)
        other = make_identity(name="other-tool", content=b"other tool")
        challenge = stack.issuer.issue(other)
        consumed = stack.issuer.consume(challenge.challenge_id)

        with self.assertRaises(ExecProofError) as ctx:
            stack.sessions.binder.bind(consumed, stack.identity, METRICS_OUTPUT)
        self.assertEqual(ctx.exception.kind, ErrorKind.CHECKSUM_MISMATCH)


class TestCommitmentSubstitution(unittest.TestCase):

    def setUp(self):
        self.stack = build_stack()
        self.addCleanup(self.stack.sessions.shutdown)
        self.sessions = self.stack.sessions

    def test_commitment_swapped_after_publication(self):
        """ATTACK: publish one commitment, then prove over another output."""
        sid = self.sessions.start_session(self.stack.identity)
        self.sessions.submit_execution(sid, METRICS_OUTPUT)
        self.sessions.commit(sid)
        session = self.sessions.get_session(sid)

        doctored = replace(
            session.witness,
            raw_output=b"1 MiB, temp 20C",
            output_digest=output_digest(session.challenge.nonce, b"1 MiB, temp 20C")
        )
        second = HashCommit().commit(doctored)
        with self.assertRaises(ExecProofError) as ctx:
            self.stack.verifier.record_commitment(session.challenge.challenge_id, second.value)
        self.assertEqual(ctx.exception.kind, ErrorKind.COMMITMENT_MISMATCH)

        public = PublicInputs(
            nonce=session.challenge.nonce_hex,
            binary_checksum=self.stack.identity.checksum,
            commitment_value=second.value
        )
        proof = self.stack.backend.prove(PrivateWitness(doctored, second.blinding), public)
        attack = replace(self.sessions.transcript(sid), proof=proof, commitment_value=second.value)

        result = self.stack.verifier.verify(attack)
        self.assertEqual(result.kind, ErrorKind.COMMITMENT_MISMATCH)
        self.assertEqual(result.stage, Stage.VERIFY_COMMITMENT)


class TestMetricsToolScenario(unittest.TestCase):
    """A fixed metrics tool printing "42 MiB, temp 65C" under digest-only binding."""

    def test_end_to_end(self):
        stack = build_stack()
        self.addCleanup(stack.sessions.shutdown)
        sessions = stack.sessions

        sid = sessions.start_session(stack.identity)
        nonce = sessions.challenge(sid).nonce
        sessions.submit_execution(sid, METRICS_OUTPUT)

        witness = sessions.get_session(sid).witness
        self.assertEqual(witness.output_digest, sha256_hash(nonce + b"42 MiB, temp 65C"))

        sessions.finalize(sid)
        self.assertTrue(sessions.verify(sid).is_accepted())
        self.assertEqual(sessions.status(sid), SessionStatus.VERIFIED)

        stack.clock.advance(31)
        replay = stack.verifier.verify(sessions.transcript(sid))
        self.assertEqual(replay.outcome, VerificationOutcome.REJECTED)
        self.assertEqual(replay.kind, ErrorKind.EXPIRED)


if __name__ == "__main__":
    unittest.main(verbosity=2)
