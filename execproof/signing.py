"""
execproof Ed25519 Signing

Used by the reference circuit backend (proof transcripts), the reference
attestor, and signed checksum registry entries.
"""

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .canonicalization import canonicalize

ALGORITHM = "Ed25519"


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode('ascii'), validate=True)


@dataclass
class KeyPair:
    """Ed25519 key pair."""
    key_id: str
    signing_key: bytes
    verify_key: bytes
    created_at: datetime
    algorithm: str = ALGORITHM

    @classmethod
    def generate(cls, key_id: str) -> 'KeyPair':
        sk = SigningKey.generate()
        return cls(
            key_id=key_id,
            signing_key=bytes(sk),
            verify_key=bytes(sk.verify_key),
            created_at=datetime.now(timezone.utc)
        )

    def sign(self, payload: bytes) -> str:
        """Sign raw bytes and return the base64 signature."""
        return b64e(SigningKey(self.signing_key).sign(payload).signature)

    def sign_object(self, obj: Any) -> str:
        """Sign the canonical JSON encoding of ``obj``."""
        return self.sign(canonicalize(obj))

    def public_key_b64(self) -> str:
        return b64e(self.verify_key)

    def to_trust_entry(self) -> Dict[str, Any]:
        """Public half, as stored in a trust file."""
        return {
            "key_id": self.key_id,
            "algorithm": self.algorithm,
            "public_key": self.public_key_b64(),
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
        }

    def to_secret_file(self) -> Dict[str, Any]:
        return {"kid": self.key_id, "private_key_b64": b64e(self.signing_key)}

    @classmethod
    def from_secret_file(cls, data: Dict[str, Any]) -> 'KeyPair':
        sk = SigningKey(b64d(data["private_key_b64"]))
        return cls(
            key_id=data["kid"],
            signing_key=bytes(sk),
            verify_key=bytes(sk.verify_key),
            created_at=datetime.now(timezone.utc)
        )


def verify_signature(payload: bytes, signature_b64: str, public_key: Union[bytes, str]) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        payload: The signed bytes
        signature_b64: Base64-encoded signature
        public_key: Raw 32-byte verify key, or its base64 form

    Returns:
        True if the signature is valid, False for a bad signature or
        malformed key/signature encodings
    """
    if not isinstance(signature_b64, str):
        return False
    try:
        key_bytes = b64d(public_key) if isinstance(public_key, str) else public_key
        VerifyKey(key_bytes).verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def verify_object_signature(obj: Any, signature_b64: str, public_key: Union[bytes, str]) -> bool:
    """Verify a signature over the canonical encoding of ``obj``. False if ``obj`` cannot be encoded."""
    try:
        payload = canonicalize(obj)
    except (TypeError, ValueError):
        return False
    return verify_signature(payload, signature_b64, public_key)


def save_key_pair(key_pair: KeyPair, path: Union[str, Path]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(key_pair.to_secret_file(), indent=2), encoding="utf-8")


def load_key_pair(path: Union[str, Path], key_id: Optional[str] = None) -> KeyPair:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    key_pair = KeyPair.from_secret_file(data)
    if key_id and key_pair.key_id != key_id:
        raise ValueError(f"Key file holds {key_pair.key_id}, expected {key_id}")
    return key_pair
