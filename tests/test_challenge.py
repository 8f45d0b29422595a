"""
execproof Challenge Issuer Test Suite

Critical invariant tested:
    A CHALLENGE IS CONSUMED AT MOST ONCE
"""

import threading
import unittest

from execproof import (
    ChallengeIssuer,
    ChallengeState,
    EntropyUnavailableError,
    ErrorKind,
    ExecProofError,
)

from support import ManualClock, make_identity


class TestChallengeIssue(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.issuer = ChallengeIssuer(ttl_seconds=30, clock=self.clock)
        self.identity = make_identity()

    def test_issue_fields(self):
        c = self.issuer.issue(self.identity)

        self.assertEqual(c.state, ChallengeState.ISSUED)
        self.assertEqual(len(c.nonce), 32)
        self.assertEqual(c.binary_checksum, self.identity.checksum)
        self.assertEqual(c.issuer_id, self.issuer.issuer_id)
        self.assertEqual((c.expires_at - c.issued_at).total_seconds(), 30)

    def test_nonces_are_fresh(self):
        nonces = {self.issuer.issue(self.identity).nonce for _ in range(50)}
        self.assertEqual(len(nonces), 50)

    def test_nonce_not_in_repr(self):
        c = self.issuer.issue(self.identity)
        self.assertNotIn(c.nonce_hex, repr(c))

    def test_short_nonce_refused(self):
        with self.assertRaises(ValueError):
            ChallengeIssuer(nonce_bytes=15)

    def test_minimum_nonce_accepted(self):
        issuer = ChallengeIssuer(nonce_bytes=16, clock=self.clock)
        self.assertEqual(len(issuer.issue(self.identity).nonce), 16)

    def test_non_positive_ttl_refused(self):
        with self.assertRaises(ValueError):
            ChallengeIssuer(ttl_seconds=0)

    def test_entropy_failure_propagates(self):
        def broken_source(n):
            raise EntropyUnavailableError("no entropy")

        issuer = ChallengeIssuer(clock=self.clock, random_source=broken_source)
        with self.assertRaises(EntropyUnavailableError):
            issuer.issue(self.identity)

    def test_entropy_error_is_not_a_protocol_error(self):
        self.assertFalse(issubclass(EntropyUnavailableError, ExecProofError))

    def test_round_trip_dict(self):
        from execproof import Challenge
        c = self.issuer.issue(self.identity)
        self.assertEqual(Challenge.from_dict(c.to_dict()), c)


class TestChallengeConsume(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.issuer = ChallengeIssuer(ttl_seconds=30, clock=self.clock)
        self.challenge = self.issuer.issue(make_identity())

    def test_consume_once(self):
        consumed = self.issuer.consume(self.challenge.challenge_id)
        self.assertEqual(consumed.state, ChallengeState.CONSUMED)
        self.assertEqual(consumed.nonce, self.challenge.nonce)

    def test_second_consume_rejected(self):
        self.issuer.consume(self.challenge.challenge_id)
        with self.assertRaises(ExecProofError) as ctx:
            self.issuer.consume(self.challenge.challenge_id)
        self.assertEqual(ctx.exception.kind, ErrorKind.ALREADY_CONSUMED)

    def test_unknown_challenge(self):
        with self.assertRaises(ExecProofError) as ctx:
            self.issuer.consume("no-such-challenge")
        self.assertEqual(ctx.exception.kind, ErrorKind.NOT_FOUND)

    def test_consume_after_expiry(self):
        self.clock.advance(31)
        with self.assertRaises(ExecProofError) as ctx:
            self.issuer.consume(self.challenge.challenge_id)
        self.assertEqual(ctx.exception.kind, ErrorKind.EXPIRED)
        self.assertEqual(self.issuer.get(self.challenge.challenge_id).state, ChallengeState.EXPIRED)

        # Still expired, not "already consumed", on a retry
        with self.assertRaises(ExecProofError) as ctx:
            self.issuer.consume(self.challenge.challenge_id)
        self.assertEqual(ctx.exception.kind, ErrorKind.EXPIRED)

    def test_consume_at_exact_expiry_succeeds(self):
        self.clock.advance(30)
        consumed = self.issuer.consume(self.challenge.challenge_id)
        self.assertEqual(consumed.state, ChallengeState.CONSUMED)

    def test_get_reports_overdue_as_expired(self):
        self.clock.advance(60)
        self.assertEqual(self.issuer.get(self.challenge.challenge_id).state, ChallengeState.EXPIRED)

    def test_expire_stale(self):
        self.issuer.issue(make_identity())
        self.clock.advance(31)
        self.assertEqual(self.issuer.expire_stale(), 2)
        self.assertEqual(self.issuer.expire_stale(), 0)

    def test_expire_stale_leaves_consumed(self):
        self.issuer.consume(self.challenge.challenge_id)
        self.clock.advance(31)
        self.assertEqual(self.issuer.expire_stale(), 0)
        self.assertEqual(self.issuer.store.get(self.challenge.challenge_id).state, ChallengeState.CONSUMED)

    def test_is_expired_unknown_raises(self):
        with self.assertRaises(ExecProofError) as ctx:
            self.issuer.is_expired("missing")
        self.assertEqual(ctx.exception.kind, ErrorKind.NOT_FOUND)

    def test_is_consumed(self):
        self.assertFalse(self.issuer.is_consumed(self.challenge.challenge_id))
        self.issuer.consume(self.challenge.challenge_id)
        self.assertTrue(self.issuer.is_consumed(self.challenge.challenge_id))
        self.assertFalse(self.issuer.is_consumed("missing"))


class TestChallengeEviction(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.issuer = ChallengeIssuer(ttl_seconds=30, clock=self.clock)
        self.identity = make_identity()

    def test_lapsed_challenges_forgotten(self):
        old = self.issuer.issue(self.identity)
        self.issuer.consume(old.challenge_id)
        self.clock.advance(61)
        fresh = self.issuer.issue(self.identity)

        self.assertEqual(self.issuer.evict_expired(retention_seconds=30), [old.challenge_id])
        self.assertIsNone(self.issuer.get(old.challenge_id))
        self.assertFalse(self.issuer.is_issued_here(old))
        self.assertEqual(self.issuer.get(fresh.challenge_id).state, ChallengeState.ISSUED)

    def test_recently_expired_kept(self):
        c = self.issuer.issue(self.identity)
        self.clock.advance(45)

        self.assertEqual(self.issuer.evict_expired(retention_seconds=30), [])
        self.assertEqual(self.issuer.store.get(c.challenge_id).state, ChallengeState.EXPIRED)

    def test_store_shrinks(self):
        for _ in range(10):
            self.issuer.issue(self.identity)
        self.clock.advance(100)
        self.assertEqual(len(self.issuer.evict_expired(retention_seconds=0)), 10)
        self.assertEqual(len(self.issuer.store), 0)


class TestConcurrentConsume(unittest.TestCase):

    def test_exactly_one_consumer_wins(self):
        issuer = ChallengeIssuer(ttl_seconds=30, clock=ManualClock())
        challenge = issuer.issue(make_identity())

        workers = 16
        barrier = threading.Barrier(workers)
        successes = []
        failures = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                issuer.consume(challenge.challenge_id)
                with lock:
                    successes.append(1)
            except ExecProofError as e:
                with lock:
                    failures.append(e.kind)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), workers - 1)
        self.assertTrue(all(k == ErrorKind.ALREADY_CONSUMED for k in failures))


class TestIssuerProvenance(unittest.TestCase):

    def test_foreign_challenge_not_issued_here(self):
        clock = ManualClock()
        ours = ChallengeIssuer(clock=clock)
        theirs = ChallengeIssuer(clock=clock)
        foreign = theirs.issue(make_identity())

        self.assertFalse(ours.is_issued_here(foreign))
        self.assertTrue(theirs.is_issued_here(foreign))

    def test_tampered_nonce_not_issued_here(self):
        from dataclasses import replace
        issuer = ChallengeIssuer(clock=ManualClock())
        c = issuer.issue(make_identity())
        forged = replace(c, nonce=bytes(32))
        self.assertFalse(issuer.is_issued_here(forged))


if __name__ == "__main__":
    unittest.main(verbosity=2)
