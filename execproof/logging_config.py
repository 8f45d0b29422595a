"""
Logging configuration for execproof.

Provides structured JSON logging for audit trails and debugging.
Nonces, blindings and raw program output are never written to logs.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import List, Optional

# Session currently being driven on this thread/task
session_id_var: ContextVar[str] = ContextVar('session_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        session_id = get_session_id()
        if session_id:
            log_data["session_id"] = session_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Logger for protocol audit events.

    Covers the challenge lifecycle, session transitions, commitments
    published to the verifier, and verification decisions.
    """

    def __init__(self, name: str = "execproof.audit"):
        self._logger = logging.getLogger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            **kwargs
        }
        session_id = get_session_id()
        if session_id and "session_id" not in extra:
            extra["session_id"] = session_id

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def challenge_issued(self, challenge_id: str, binary_checksum: str, expires_at: str) -> None:
        self._log(
            logging.INFO,
            "CHALLENGE_ISSUED",
            challenge_id=challenge_id,
            binary_checksum=binary_checksum,
            expires_at=expires_at,
            message=f"Challenge {challenge_id} issued"
        )

    def challenge_consumed(self, challenge_id: str) -> None:
        self._log(
            logging.INFO,
            "CHALLENGE_CONSUMED",
            challenge_id=challenge_id,
            message=f"Challenge {challenge_id} consumed"
        )

    def challenge_rejected(self, challenge_id: str, kind: str) -> None:
        self._log(
            logging.WARNING,
            "CHALLENGE_REJECTED",
            challenge_id=challenge_id,
            kind=kind,
            message=f"Consume of challenge {challenge_id} refused: {kind}"
        )

    def session_transition(
        self,
        session_id: str,
        from_status: str,
        to_status: str,
        kind: Optional[str] = None,
        stage: Optional[str] = None
    ) -> None:
        level = logging.WARNING if to_status in ("REJECTED", "EXPIRED") else logging.INFO
        self._log(
            level,
            "SESSION_TRANSITION",
            session_id=session_id,
            from_status=from_status,
            to_status=to_status,
            kind=kind,
            stage=stage,
            message=f"Session {session_id}: {from_status} -> {to_status}"
        )

    def commitment_recorded(self, challenge_id: str, commitment_value: str) -> None:
        self._log(
            logging.INFO,
            "COMMITMENT_RECORDED",
            challenge_id=challenge_id,
            commitment_value=mask(commitment_value, 23),
            message=f"Commitment recorded for challenge {challenge_id}"
        )

    def verification_decision(
        self,
        challenge_id: str,
        outcome: str,
        kind: Optional[str] = None,
        stage: Optional[str] = None,
        gates_passed: Optional[List[str]] = None
    ) -> None:
        level = logging.INFO if outcome == "ACCEPTED" else logging.WARNING
        self._log(
            level,
            "VERIFICATION_DECISION",
            challenge_id=challenge_id,
            outcome=outcome,
            kind=kind,
            stage=stage,
            gates_passed=gates_passed,
            message=f"Verification {outcome} for challenge {challenge_id}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_session_id(session_id: str) -> None:
    session_id_var.set(session_id)


def get_session_id() -> str:
    return session_id_var.get()


def mask(value: str, visible_chars: int = 8) -> str:
    """Keep only the first ``visible_chars`` characters of an identifier."""
    if len(value) <= visible_chars:
        return value
    return value[:visible_chars] + "..."


# Global audit logger instance
audit_log = AuditLogger()
