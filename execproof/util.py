"""
Utility functions for execproof.

Time handling, identifiers, and the secure randomness source.
"""

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .errors import EntropyUnavailableError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_rfc3339(dt: datetime) -> str:
    """Render an aware datetime as RFC3339 UTC with a ``Z`` suffix."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        raise ValueError(f"Timestamp has no timezone: {s}")
    return dt.astimezone(timezone.utc)


def require_str(data: Dict[str, Any], key: str, optional: bool = False) -> Optional[str]:
    """
    Read a string field from decoded JSON.

    Raises:
        ValueError: if ``data`` is not an object, the field is missing, or
            it holds anything other than a string
    """
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object holding {key!r}")
    value = data.get(key)
    if value is None:
        if optional:
            return None
        raise ValueError(f"Missing required field {key!r}")
    if not isinstance(value, str):
        raise ValueError(f"Field {key!r} must be a string, got {type(value).__name__}")
    return value


def new_id() -> str:
    return str(uuid.uuid4())


def secure_random_bytes(length: int) -> bytes:
    """
    Draw ``length`` bytes from the operating system CSPRNG.

    Raises:
        EntropyUnavailableError: if the OS source fails or returns short
    """
    try:
        data = secrets.token_bytes(length)
    except (OSError, NotImplementedError) as e:
        raise EntropyUnavailableError(f"Secure random source unavailable: {e}") from e
    if len(data) != length:
        raise EntropyUnavailableError(
            f"Secure random source returned {len(data)} of {length} bytes"
        )
    return data
