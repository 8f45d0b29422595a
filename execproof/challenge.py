"""
execproof Challenge Issuer

Issues unpredictable, single-use challenge nonces and tracks their
lifecycle:

    ISSUED --consume--> CONSUMED
    ISSUED --expiry---> EXPIRED

The ISSUED -> CONSUMED transition is the only way a challenge becomes
usable for binding, and it is atomic: of any number of concurrent consume
attempts on one challenge id, exactly one succeeds.

Execution of the target binary never happens while the registry lock is
held; the lock only guards the in-memory record.
"""

import hmac
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from . import config
from .errors import ErrorKind, ExecProofError, Stage
from .identity import BinaryIdentity
from .logging_config import audit_log
from .util import Clock, new_id, parse_rfc3339, require_str, secure_random_bytes, to_rfc3339, utc_now

logger = logging.getLogger(__name__)


class ChallengeState(str, Enum):
    ISSUED = "ISSUED"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Challenge:
    """
    A single-use challenge.

    Instances are snapshots; the authoritative state lives in the issuer's
    store. ``binary_checksum`` pins the challenge to the binary it was
    issued for and ``issuer_id`` names the issuer instance that minted it.
    """
    challenge_id: str
    nonce: bytes = field(repr=False)
    binary_checksum: str
    issuer_id: str
    issued_at: datetime
    expires_at: datetime
    state: ChallengeState = ChallengeState.ISSUED

    @property
    def nonce_hex(self) -> str:
        return self.nonce.hex()

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "nonce": self.nonce_hex,
            "binary_checksum": self.binary_checksum,
            "issuer_id": self.issuer_id,
            "issued_at": to_rfc3339(self.issued_at),
            "expires_at": to_rfc3339(self.expires_at),
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Challenge':
        return cls(
            challenge_id=require_str(data, "challenge_id"),
            nonce=bytes.fromhex(require_str(data, "nonce")),
            binary_checksum=require_str(data, "binary_checksum"),
            issuer_id=require_str(data, "issuer_id"),
            issued_at=parse_rfc3339(require_str(data, "issued_at")),
            expires_at=parse_rfc3339(require_str(data, "expires_at")),
            state=ChallengeState(require_str(data, "state", optional=True) or ChallengeState.ISSUED.value)
        )


class ChallengeStore(ABC):
    """
    Storage for challenge records.

    Implementations must make ``consume`` an atomic check-and-set.
    """

    @abstractmethod
    def insert(self, challenge: Challenge) -> None:
        """Store a newly issued challenge. Ids are never overwritten."""

    @abstractmethod
    def get(self, challenge_id: str) -> Optional[Challenge]:
        """Current snapshot, or None for an unknown id."""

    @abstractmethod
    def consume(self, challenge_id: str, now: datetime) -> Challenge:
        """
        Atomically move an ISSUED challenge to CONSUMED.

        Raises:
            ExecProofError: NOT_FOUND, EXPIRED (record is marked EXPIRED),
                or ALREADY_CONSUMED
        """

    @abstractmethod
    def expire_stale(self, now: datetime) -> int:
        """Mark overdue ISSUED challenges EXPIRED. Returns count changed."""

    @abstractmethod
    def evict(self, cutoff: datetime) -> List[str]:
        """Drop every record whose ``expires_at`` is before ``cutoff``. Returns the dropped ids."""


class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local challenge store guarded by a single lock.

    Not persistent: challenges do not survive a restart, which only ever
    errs towards rejecting a session.
    """

    def __init__(self):
        self._challenges: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def insert(self, challenge: Challenge) -> None:
        with self._lock:
            if challenge.challenge_id in self._challenges:
                raise ValueError(f"Duplicate challenge id: {challenge.challenge_id}")
            self._challenges[challenge.challenge_id] = challenge

    def get(self, challenge_id: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.get(challenge_id)

    def consume(self, challenge_id: str, now: datetime) -> Challenge:
        with self._lock:
            current = self._challenges.get(challenge_id)
            if current is None:
                raise ExecProofError(
                    ErrorKind.NOT_FOUND, Stage.CONSUME,
                    f"Unknown challenge {challenge_id}"
                )
            if current.state == ChallengeState.EXPIRED:
                raise ExecProofError(
                    ErrorKind.EXPIRED, Stage.CONSUME,
                    f"Challenge {challenge_id} expired at {to_rfc3339(current.expires_at)}"
                )
            if current.state != ChallengeState.ISSUED:
                raise ExecProofError(
                    ErrorKind.ALREADY_CONSUMED, Stage.CONSUME,
                    f"Challenge {challenge_id} is {current.state.value}"
                )
            if current.is_expired(now):
                self._challenges[challenge_id] = replace(current, state=ChallengeState.EXPIRED)
                raise ExecProofError(
                    ErrorKind.EXPIRED, Stage.CONSUME,
                    f"Challenge {challenge_id} expired at {to_rfc3339(current.expires_at)}"
                )
            consumed = replace(current, state=ChallengeState.CONSUMED)
            self._challenges[challenge_id] = consumed
            return consumed

    def expire_stale(self, now: datetime) -> int:
        with self._lock:
            stale = [
                cid for cid, c in self._challenges.items()
                if c.state == ChallengeState.ISSUED and c.is_expired(now)
            ]
            for cid in stale:
                self._challenges[cid] = replace(self._challenges[cid], state=ChallengeState.EXPIRED)
            return len(stale)

    def evict(self, cutoff: datetime) -> List[str]:
        with self._lock:
            evicted = [cid for cid, c in self._challenges.items() if c.expires_at < cutoff]
            for cid in evicted:
                del self._challenges[cid]
            return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


class ChallengeIssuer:
    """
    Mints and tracks challenges.

    Usage:
        issuer = ChallengeIssuer(ttl_seconds=30)
        challenge = issuer.issue(identity)
        ...
        consumed = issuer.consume(challenge.challenge_id)
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        nonce_bytes: Optional[int] = None,
        store: Optional[ChallengeStore] = None,
        clock: Clock = utc_now,
        random_source=secure_random_bytes
    ):
        self.ttl_seconds = config.CHALLENGE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.nonce_bytes = config.NONCE_BYTES if nonce_bytes is None else nonce_bytes
        if self.nonce_bytes < config.MIN_NONCE_BYTES:
            raise ValueError(
                f"nonce_bytes={self.nonce_bytes} is below the "
                f"{config.MIN_NONCE_BYTES}-byte minimum"
            )
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store or InMemoryChallengeStore()
        self.clock = clock
        self.issuer_id = new_id()
        self._random_source = random_source

    def issue(self, binary_identity: BinaryIdentity) -> Challenge:
        """
        Issue a fresh challenge for ``binary_identity``.

        Raises:
            EntropyUnavailableError: if no secure nonce can be drawn
        """
        nonce = self._random_source(self.nonce_bytes)
        now = self.clock()
        challenge = Challenge(
            challenge_id=new_id(),
            nonce=nonce,
            binary_checksum=binary_identity.checksum,
            issuer_id=self.issuer_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds)
        )
        self.store.insert(challenge)
        audit_log.challenge_issued(
            challenge.challenge_id,
            binary_identity.checksum,
            to_rfc3339(challenge.expires_at)
        )
        return challenge

    def consume(self, challenge_id: str) -> Challenge:
        """Atomically consume a challenge; see ``ChallengeStore.consume``."""
        try:
            consumed = self.store.consume(challenge_id, self.clock())
        except ExecProofError as e:
            audit_log.challenge_rejected(challenge_id, e.kind.value)
            raise
        audit_log.challenge_consumed(challenge_id)
        return consumed

    def get(self, challenge_id: str) -> Optional[Challenge]:
        """Current snapshot, with an overdue ISSUED challenge reported EXPIRED."""
        challenge = self.store.get(challenge_id)
        if challenge is None:
            return None
        if challenge.state == ChallengeState.ISSUED and challenge.is_expired(self.clock()):
            return replace(challenge, state=ChallengeState.EXPIRED)
        return challenge

    def is_issued_here(self, challenge: Challenge) -> bool:
        """True if this instance minted ``challenge`` with exactly that nonce."""
        if challenge.issuer_id != self.issuer_id:
            return False
        recorded = self.store.get(challenge.challenge_id)
        if recorded is None:
            return False
        return hmac.compare_digest(recorded.nonce, challenge.nonce)

    def is_expired(self, challenge_id: str) -> bool:
        challenge = self.store.get(challenge_id)
        if challenge is None:
            raise ExecProofError(ErrorKind.NOT_FOUND, Stage.CONSUME, f"Unknown challenge {challenge_id}")
        return challenge.state == ChallengeState.EXPIRED or challenge.is_expired(self.clock())

    def is_consumed(self, challenge_id: str) -> bool:
        """True if this issuer's own record shows the challenge CONSUMED."""
        challenge = self.store.get(challenge_id)
        return challenge is not None and challenge.state == ChallengeState.CONSUMED

    def expire_stale(self) -> int:
        count = self.store.expire_stale(self.clock())
        if count:
            logger.info("Expired %d stale challenges", count)
        return count

    def evict_expired(self, retention_seconds: Optional[float] = None) -> List[str]:
        """
        Forget challenges that expired more than ``retention_seconds`` ago.

        A proof over a forgotten challenge is rejected as not issued here.
        """
        retention = config.RETENTION_SECONDS if retention_seconds is None else retention_seconds
        self.expire_stale()
        evicted = self.store.evict(self.clock() - timedelta(seconds=retention))
        if evicted:
            logger.info("Evicted %d expired challenges", len(evicted))
        return evicted
