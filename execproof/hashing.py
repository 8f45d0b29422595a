"""
execproof Hashing

All digests use SHA-256 and are rendered as ``sha256:`` followed by
lowercase hexadecimal. The output digest is the binding primitive of the
protocol: it is computed over the challenge nonce concatenated with the raw
program output, never over the output alone.
"""

import hashlib
import hmac
from pathlib import Path
from typing import Union

from .canonicalization import canonicalize

DIGEST_PREFIX = "sha256:"
CHECKSUM_ALGORITHM = "sha256"

_FILE_CHUNK_SIZE = 65536


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute a prefixed SHA-256 digest.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


def object_hash(obj) -> str:
    """Digest of the canonical JSON encoding of ``obj``."""
    return sha256_hash(canonicalize(obj))


def output_digest(nonce: bytes, raw_output: bytes) -> str:
    """
    Compute ``digest(nonce || raw_output)``.

    A deterministic binary always prints the same thing, so a digest of
    the output alone is public knowledge. Prefixing the per-challenge nonce
    makes the digest unpredictable until the challenge exists.
    """
    if not nonce:
        raise ValueError("nonce must not be empty")
    return sha256_hash(bytes(nonce) + bytes(raw_output))


def file_checksum(path: Union[str, Path]) -> str:
    """Stream a file from disk and return its prefixed SHA-256 digest."""
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(_FILE_CHUNK_SIZE), b""):
            h.update(chunk)
    return DIGEST_PREFIX + h.hexdigest()


def digests_equal(a: str, b: str) -> bool:
    """Constant time comparison of two digest strings."""
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode('utf-8'), b.encode('utf-8'))


def is_digest(value: str) -> bool:
    """True if ``value`` is a well-formed prefixed SHA-256 digest."""
    if not isinstance(value, str) or not value.startswith(DIGEST_PREFIX):
        return False
    hex_part = value[len(DIGEST_PREFIX):]
    if len(hex_part) != 64 or hex_part != hex_part.lower():
        return False
    try:
        int(hex_part, 16)
    except ValueError:
        return False
    return True


def verify_hash(declared_hash: str, data: Union[bytes, str]) -> bool:
    """
    Verify that data matches a declared hash.

    Verifiers always recompute from source data.
    """
    if not is_digest(declared_hash):
        return False
    return digests_equal(sha256_hash(data), declared_hash)
