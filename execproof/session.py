"""
execproof Proof Sessions

One session drives one end-to-end proof through the state machine

    CREATED -> CHALLENGE_ISSUED -> EXECUTED -> COMMITTED -> PROOF_SUBMITTED
            -> VERIFIED | REJECTED

Any state before PROOF_SUBMITTED moves to EXPIRED once the challenge's
``expires_at`` passes. VERIFIED, REJECTED and EXPIRED are terminal and a
new proof always needs a new session and a new challenge.

Concurrency:
- Each session has its own lock; sessions never block one another.
- Sandbox execution and proof generation run on the manager's worker pool
  with no session or registry lock held.
- The challenge's ``expires_at`` is the only timeout. A stage that
  completes after it fails with EXPIRED instead of completing late.
- ``cancel`` abandons a session. Work already running is discarded when
  it returns, and ``reap_expired`` later moves the session to EXPIRED.
- ``reap_expired`` also forgets finished sessions once their challenge
  is older than the retention window.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from . import config
from .attestation import Attestation, Attestor, ExecutionContext
from .backends import CircuitBackend, PrivateWitness, Proof, PublicInputs
from .binder import ExecutionBinder, ExecutionRequest, ExecutionWitness, NonceBinding
from .challenge import Challenge, ChallengeIssuer
from .commitment import Commitment, HashCommit
from .errors import EntropyUnavailableError, ErrorKind, ExecProofError, Stage
from .identity import BinaryIdentity
from .logging_config import audit_log, set_session_id
from .sandbox import Sandbox, require_success
from .util import new_id
from .verifier import ProofVerifier, SessionTranscript, VerificationResult

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    CREATED = "CREATED"
    CHALLENGE_ISSUED = "CHALLENGE_ISSUED"
    EXECUTED = "EXECUTED"
    COMMITTED = "COMMITTED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({SessionStatus.VERIFIED, SessionStatus.REJECTED, SessionStatus.EXPIRED})

# States from which the challenge expiry still applies
EXPIRABLE_STATUSES = frozenset({
    SessionStatus.CREATED,
    SessionStatus.CHALLENGE_ISSUED,
    SessionStatus.EXECUTED,
    SessionStatus.COMMITTED,
})

ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.CREATED: frozenset({
        SessionStatus.CHALLENGE_ISSUED, SessionStatus.REJECTED, SessionStatus.EXPIRED,
    }),
    SessionStatus.CHALLENGE_ISSUED: frozenset({
        SessionStatus.EXECUTED, SessionStatus.REJECTED, SessionStatus.EXPIRED,
    }),
    SessionStatus.EXECUTED: frozenset({
        SessionStatus.COMMITTED, SessionStatus.REJECTED, SessionStatus.EXPIRED,
    }),
    SessionStatus.COMMITTED: frozenset({
        SessionStatus.PROOF_SUBMITTED, SessionStatus.REJECTED, SessionStatus.EXPIRED,
    }),
    SessionStatus.PROOF_SUBMITTED: frozenset({
        SessionStatus.VERIFIED, SessionStatus.REJECTED,
    }),
}


@dataclass
class ProofSession:
    """
    Prover-side session state. Owned by the ``SessionManager``; the
    verifier only ever sees ``transcript()``.
    """
    session_id: str
    binary_identity: BinaryIdentity
    created_at: datetime
    nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY
    status: SessionStatus = SessionStatus.CREATED
    challenge: Optional[Challenge] = None
    witness: Optional[ExecutionWitness] = None
    commitment: Optional[Commitment] = None
    attestation: Optional[Attestation] = None
    proof: Optional[Proof] = None
    error: Optional[ExecProofError] = None
    verification: Optional[VerificationResult] = None
    cancelled: bool = False
    proving: bool = False
    history: List[Tuple[SessionStatus, datetime]] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transcript(self) -> SessionTranscript:
        if self.challenge is None:
            raise ExecProofError(
                ErrorKind.INVALID_STATE, Stage.SESSION,
                f"Session {self.session_id} has no challenge"
            )
        return SessionTranscript(
            session_id=self.session_id,
            challenge=self.challenge,
            binary_identity=self.binary_identity,
            commitment_value=self.commitment.value if self.commitment else None,
            proof=self.proof,
            nonce_binding=self.nonce_binding,
            attestation=self.attestation
        )


class SessionManager:
    """
    Session API for the prover.

    Usage:
        with SessionManager(issuer, verifier) as sessions:
            sid = sessions.start_session(identity)
            sessions.run_execution(sid, sandbox).result()
            proof = sessions.finalize(sid)
            result = sessions.verify(sid)
    """

    def __init__(
        self,
        issuer: ChallengeIssuer,
        verifier: ProofVerifier,
        backend: Optional[CircuitBackend] = None,
        binder: Optional[ExecutionBinder] = None,
        committer: Optional[HashCommit] = None,
        attestor: Optional[Attestor] = None,
        max_workers: Optional[int] = None,
        retention_seconds: Optional[float] = None
    ):
        self.issuer = issuer
        self.verifier = verifier
        self.backend = backend or verifier.backend
        self.clock = issuer.clock
        self.binder = binder or ExecutionBinder(clock=self.clock)
        self.committer = committer or HashCommit()
        self.attestor = attestor
        self.retention_seconds = config.RETENTION_SECONDS if retention_seconds is None else retention_seconds
        self._sessions: Dict[str, ProofSession] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.MAX_WORKERS,
            thread_name_prefix="execproof-session"
        )

    def __enter__(self) -> 'SessionManager':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------
    # Session API
    # ------------------------------------------------------------

    def start_session(
        self,
        binary_identity: BinaryIdentity,
        nonce_binding: NonceBinding = NonceBinding.DIGEST_ONLY
    ) -> str:
        """
        Create a session and issue its challenge.

        Raises:
            EntropyUnavailableError: propagated untouched from the issuer
        """
        session = ProofSession(
            session_id=new_id(),
            binary_identity=binary_identity,
            created_at=self.clock(),
            nonce_binding=nonce_binding
        )
        session.history.append((SessionStatus.CREATED, session.created_at))
        set_session_id(session.session_id)
        with self._lock:
            self._sessions[session.session_id] = session

        with session.lock:
            session.challenge = self.issuer.issue(binary_identity)
            self._transition(session, SessionStatus.CHALLENGE_ISSUED)
        return session.session_id

    def submit_execution(self, session_id: str, raw_output: bytes) -> SessionStatus:
        """
        Feed captured output into the session.

        Consumes the challenge and binds the output to it. On failure the
        session ends (EXPIRED for a lapsed challenge, REJECTED otherwise)
        and the error is re-raised.
        """
        session = self._get(session_id)
        with session.lock:
            self._check_expiry(session, Stage.BIND)
            self._require_status(session, SessionStatus.CHALLENGE_ISSUED, Stage.BIND)
            try:
                consumed = self.issuer.consume(session.challenge.challenge_id)
                witness = self.binder.bind(
                    consumed, session.binary_identity, raw_output, session.nonce_binding
                )
            except ExecProofError as e:
                self._fail(session, e)
                raise

            session.challenge = consumed
            session.witness = witness
            if self.attestor is not None:
                session.attestation = self._attest(session, witness)
            self._transition(session, SessionStatus.EXECUTED)
            return session.status

    def _attest(self, session: ProofSession, witness: ExecutionWitness) -> Attestation:
        context = ExecutionContext(
            challenge_id=witness.challenge_id,
            binary_checksum=witness.binary_checksum,
            output_digest=witness.output_digest
        )
        try:
            return self.attestor.attest(context)
        except ExecProofError as e:
            self._fail(session, e)
            raise
        except Exception as e:
            error = ExecProofError(
                ErrorKind.ATTESTATION_FAILED, Stage.BIND,
                f"Attestor failed for challenge {witness.challenge_id}: {e}"
            )
            self._fail(session, error)
            if isinstance(e, EntropyUnavailableError):
                raise
            raise error from e

    def execution_request(self, session_id: str, args: Optional[Sequence[str]] = None) -> ExecutionRequest:
        session = self._get(session_id)
        with session.lock:
            self._check_expiry(session, Stage.EXECUTE)
            self._require_status(session, SessionStatus.CHALLENGE_ISSUED, Stage.EXECUTE)
            return self.binder.execution_request(
                session.challenge, session.binary_identity, args, session.nonce_binding
            )

    def run_execution(
        self,
        session_id: str,
        sandbox: Sandbox,
        args: Optional[Sequence[str]] = None
    ) -> Future:
        """
        Execute the binary on the worker pool and submit its output.

        Returns:
            Future resolving to the session status after submission
        """
        request = self.execution_request(session_id, args)
        return self._executor.submit(self._execute_and_submit, session_id, sandbox, request)

    def _execute_and_submit(self, session_id: str, sandbox: Sandbox, request: ExecutionRequest) -> SessionStatus:
        set_session_id(session_id)
        try:
            result = sandbox.execute(request.binary_path, request.args, request.challenge_tag)
            raw_output = require_success(result, request.binary_path)
        except ExecProofError as e:
            self._fail_by_id(session_id, e)
            raise
        except Exception as e:
            error = ExecProofError(
                ErrorKind.SANDBOX_EXECUTION_FAILED, Stage.EXECUTE,
                f"Sandbox failed running {request.binary_path}: {e}"
            )
            self._fail_by_id(session_id, error)
            raise error from e
        return self.submit_execution(session_id, raw_output)

    def commit(self, session_id: str) -> str:
        """
        Commit to the witness and publish the commitment value to the
        verifier.

        Returns:
            The commitment value
        """
        session = self._get(session_id)
        with session.lock:
            self._check_expiry(session, Stage.COMMIT)
            self._require_status(session, SessionStatus.EXECUTED, Stage.COMMIT)
            self._commit_locked(session)
            return session.commitment.value

    def _commit_locked(self, session: ProofSession) -> None:
        commitment = self.committer.commit(session.witness)
        try:
            self.verifier.record_commitment(session.challenge.challenge_id, commitment.value)
        except ExecProofError as e:
            self._fail(session, e)
            raise
        session.commitment = commitment
        self._transition(session, SessionStatus.COMMITTED)

    def finalize(self, session_id: str) -> Proof:
        """
        Run the circuit backend and attach the proof.

        Commits first when the session is still EXECUTED. The backend runs
        without the session lock held.
        """
        session = self._get(session_id)
        with session.lock:
            self._check_expiry(session, Stage.PROVE)
            if session.status == SessionStatus.EXECUTED and not session.cancelled:
                self._commit_locked(session)
            self._require_status(session, SessionStatus.COMMITTED, Stage.PROVE)
            if session.proving:
                raise ExecProofError(
                    ErrorKind.INVALID_STATE, Stage.PROVE,
                    f"Proof generation already running for session {session_id}"
                )
            session.proving = True
            private = PrivateWitness(witness=session.witness, blinding=session.commitment.blinding)
            public = PublicInputs(
                nonce=session.challenge.nonce_hex,
                binary_checksum=session.binary_identity.checksum,
                commitment_value=session.commitment.value,
                attestation_digest=session.attestation.digest() if session.attestation else None
            )

        try:
            proof = self.backend.prove(private, public)
        except ExecProofError as e:
            with session.lock:
                session.proving = False
                if not session.cancelled:
                    self._fail(session, e)
            raise
        except BaseException:
            with session.lock:
                session.proving = False
            raise

        with session.lock:
            session.proving = False
            if session.cancelled:
                raise ExecProofError(
                    ErrorKind.CANCELLED, Stage.PROVE,
                    f"Session {session_id} was cancelled; proof discarded"
                )
            self._check_expiry(session, Stage.PROVE)
            self._require_status(session, SessionStatus.COMMITTED, Stage.PROVE)
            session.proof = proof
            self._transition(session, SessionStatus.PROOF_SUBMITTED)
            return proof

    def finalize_async(self, session_id: str) -> Future:
        return self._executor.submit(self._finalize_in_worker, session_id)

    def _finalize_in_worker(self, session_id: str) -> Proof:
        set_session_id(session_id)
        return self.finalize(session_id)

    def verify(self, session_id: str) -> VerificationResult:
        """
        Hand the session's public transcript to the verifier.

        A session that already reached VERIFIED or REJECTED through
        verification returns its recorded result.
        """
        session = self._get(session_id)
        with session.lock:
            if session.verification is not None:
                return session.verification
            if session.status in EXPIRABLE_STATUSES and self._expired(session):
                self._fail(session, self._expired_error(session, Stage.VERIFY_CHALLENGE))
            if session.status == SessionStatus.EXPIRED:
                return VerificationResult.rejected(
                    ErrorKind.EXPIRED, Stage.VERIFY_CHALLENGE,
                    f"Session {session_id} expired before a proof was submitted"
                )
            if session.status != SessionStatus.PROOF_SUBMITTED:
                error = session.error
                if error is not None:
                    return VerificationResult.from_error(error)
                return VerificationResult.rejected(
                    ErrorKind.INVALID_STATE, Stage.SESSION,
                    f"Session {session_id} is {session.status.value}, no proof submitted"
                )

            result = self.verifier.verify(session.transcript())
            session.verification = result
            if result.is_accepted():
                self._transition(session, SessionStatus.VERIFIED)
            else:
                session.error = ExecProofError(result.kind, result.stage, result.reason, result.details)
                self._transition(session, SessionStatus.REJECTED, session.error)
            return result

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def cancel(self, session_id: str) -> bool:
        """
        Abandon a session. Returns False if it had already finished.
        """
        session = self._get(session_id)
        with session.lock:
            if session.is_terminal() or session.status == SessionStatus.PROOF_SUBMITTED:
                return False
            session.cancelled = True
        logger.info("Session %s cancelled", session_id)
        return True

    def reap_expired(self) -> List[str]:
        """
        Move every overdue, unfinished session to EXPIRED.

        Sessions that are finished, or still waiting for verification, are
        forgotten once their challenge expired more than
        ``retention_seconds`` ago, along with the verifier's record of the
        challenge. Returns the ids moved to EXPIRED by this call.
        """
        cutoff = self.clock() - timedelta(seconds=self.retention_seconds)
        with self._lock:
            sessions = list(self._sessions.values())
        reaped = []
        dropped = []
        for session in sessions:
            with session.lock:
                if session.status in EXPIRABLE_STATUSES and self._expired(session):
                    self._fail(session, self._expired_error(session, Stage.SESSION))
                    reaped.append(session.session_id)
                if self._droppable(session, cutoff):
                    dropped.append(session.session_id)

        if dropped:
            with self._lock:
                for session_id in dropped:
                    self._sessions.pop(session_id, None)
            logger.info("Dropped %d finished sessions", len(dropped))
        self.verifier.evict_expired(self.retention_seconds)
        return reaped

    @staticmethod
    def _droppable(session: ProofSession, cutoff: datetime) -> bool:
        if session.proving:
            return False
        if not (session.is_terminal() or session.status == SessionStatus.PROOF_SUBMITTED):
            return False
        return session.challenge is None or session.challenge.expires_at < cutoff

    def status(self, session_id: str) -> SessionStatus:
        return self._get(session_id).status

    def challenge(self, session_id: str) -> Challenge:
        session = self._get(session_id)
        if session.challenge is None:
            raise ExecProofError(ErrorKind.INVALID_STATE, Stage.SESSION, f"Session {session_id} has no challenge")
        return session.challenge

    def transcript(self, session_id: str) -> SessionTranscript:
        session = self._get(session_id)
        with session.lock:
            return session.transcript()

    def get_session(self, session_id: str) -> ProofSession:
        return self._get(session_id)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _get(self, session_id: str) -> ProofSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise ExecProofError(ErrorKind.NOT_FOUND, Stage.SESSION, f"Unknown session {session_id}")
        return session

    def _transition(
        self,
        session: ProofSession,
        to_status: SessionStatus,
        error: Optional[ExecProofError] = None
    ) -> None:
        allowed = ALLOWED_TRANSITIONS.get(session.status, frozenset())
        if to_status not in allowed:
            raise ExecProofError(
                ErrorKind.INVALID_STATE, Stage.SESSION,
                f"Illegal transition {session.status.value} -> {to_status.value}"
            )
        from_status = session.status
        session.status = to_status
        session.history.append((to_status, self.clock()))
        audit_log.session_transition(
            session.session_id,
            from_status.value,
            to_status.value,
            kind=error.kind.value if error else None,
            stage=error.stage.value if error else None
        )

    def _fail_by_id(self, session_id: str, error: ExecProofError) -> None:
        session = self._get(session_id)
        with session.lock:
            self._fail(session, error)

    def _fail(self, session: ProofSession, error: ExecProofError) -> None:
        if session.is_terminal():
            return
        if error.kind == ErrorKind.EXPIRED and session.status in EXPIRABLE_STATUSES:
            to_status = SessionStatus.EXPIRED
        else:
            to_status = SessionStatus.REJECTED
        session.error = error
        self._transition(session, to_status, error)

    def _expired(self, session: ProofSession) -> bool:
        return session.challenge is not None and session.challenge.is_expired(self.clock())

    @staticmethod
    def _expired_error(session: ProofSession, stage: Stage) -> ExecProofError:
        return ExecProofError(
            ErrorKind.EXPIRED, stage,
            f"Challenge {session.challenge.challenge_id} expired before the session completed"
        )

    def _check_expiry(self, session: ProofSession, stage: Stage) -> None:
        if session.status in EXPIRABLE_STATUSES and self._expired(session):
            error = self._expired_error(session, stage)
            self._fail(session, error)
            raise error

    @staticmethod
    def _require_status(session: ProofSession, expected: SessionStatus, stage: Stage) -> None:
        if session.cancelled:
            raise ExecProofError(
                ErrorKind.CANCELLED, stage,
                f"Session {session.session_id} was cancelled"
            )
        if session.status != expected:
            if session.status == SessionStatus.EXPIRED:
                raise ExecProofError(ErrorKind.EXPIRED, stage, f"Session {session.session_id} has expired")
            raise ExecProofError(
                ErrorKind.INVALID_STATE, stage,
                f"Session {session.session_id} is {session.status.value}, expected {expected.value}"
            )
