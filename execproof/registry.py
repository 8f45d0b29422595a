"""
execproof Checksum Registry

The verifier's independent record of which checksum each released binary
version must have. It is populated out of band by a trusted release
process; a checksum claimed by a prover is only ever compared against it.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from . import config
from .canonicalization import canonicalize
from .errors import ErrorKind, ExecProofError, Stage
from .hashing import is_digest
from .identity import BinaryIdentity
from .signing import ALGORITHM, KeyPair, verify_signature


class ChecksumRegistry(ABC):

    @abstractmethod
    def expected_checksum(self, binary_name: str, version: str) -> str:
        """
        Expected checksum for a binary version.

        Raises:
            ExecProofError: NOT_FOUND for an unregistered name/version
        """


def _not_found(binary_name: str, version: str) -> ExecProofError:
    return ExecProofError(
        ErrorKind.NOT_FOUND, Stage.REGISTRY,
        f"No checksum registered for {binary_name} {version}"
    )


class InMemoryChecksumRegistry(ChecksumRegistry):
    """
    Locked in-memory registry. Entries are write-once: re-registering the
    same checksum is a no-op, a different one is refused.
    """

    def __init__(self, entries: Optional[Iterable[Tuple[str, str, str]]] = None):
        self._entries: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()
        for name, version, checksum in entries or []:
            self.register(name, version, checksum)

    def register(self, binary_name: str, version: str, checksum: str) -> None:
        if not is_digest(checksum):
            raise ValueError(f"Invalid checksum: {checksum!r}")
        key = (binary_name, version)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing != checksum:
                raise ValueError(f"{binary_name} {version} is already registered with a different checksum")
            self._entries[key] = checksum

    def register_identity(self, identity: BinaryIdentity) -> None:
        self.register(identity.name, identity.version, identity.checksum)

    def expected_checksum(self, binary_name: str, version: str) -> str:
        with self._lock:
            checksum = self._entries.get((binary_name, version))
        if checksum is None:
            raise _not_found(binary_name, version)
        return checksum

    def entries(self) -> List[Dict[str, str]]:
        with self._lock:
            items = sorted(self._entries.items())
        return [{"name": n, "version": v, "checksum": c} for (n, v), c in items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonFileChecksumRegistry(ChecksumRegistry):
    """
    Registry backed by a JSON file of the form

        {"binaries": [{"name": ..., "version": ..., "checksum": ...}, ...]}

    The file is re-read through the TTL cache in ``execproof.config`` and
    the lookup table is rebuilt only when the cache hands back new contents.
    A missing or unreadable file fails every lookup with NOT_FOUND.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or config.REGISTRY_PATH
        self._source: Optional[Dict[str, Any]] = None
        self._registry: Optional[InMemoryChecksumRegistry] = None
        self._lock = threading.Lock()

    def _load(self) -> InMemoryChecksumRegistry:
        try:
            data = config.load_json_cached(self.path)
        except FileNotFoundError as e:
            raise ExecProofError(
                ErrorKind.NOT_FOUND, Stage.REGISTRY,
                f"Checksum registry not found at {self.path}"
            ) from e
        except (OSError, ValueError) as e:
            raise ExecProofError(
                ErrorKind.NOT_FOUND, Stage.REGISTRY,
                f"Checksum registry at {self.path} is unreadable: {e}"
            ) from e

        with self._lock:
            if data is not self._source:
                try:
                    self._registry = registry_from_dict(data)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    raise ExecProofError(
                        ErrorKind.NOT_FOUND, Stage.REGISTRY,
                        f"Checksum registry at {self.path} is malformed: {e}"
                    ) from e
                self._source = data
            return self._registry

    def expected_checksum(self, binary_name: str, version: str) -> str:
        return self._load().expected_checksum(binary_name, version)


def registry_from_dict(data: Dict[str, Any]) -> InMemoryChecksumRegistry:
    registry = InMemoryChecksumRegistry()
    for entry in data.get("binaries", []):
        registry.register(entry["name"], entry["version"], entry["checksum"])
    return registry


def save_registry(registry: InMemoryChecksumRegistry, path: Union[str, Path]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps({"binaries": registry.entries()}, indent=2, sort_keys=True), encoding="utf-8")


def load_registry(path: Union[str, Path]) -> InMemoryChecksumRegistry:
    p = Path(path)
    if not p.exists():
        return InMemoryChecksumRegistry()
    return registry_from_dict(json.loads(p.read_text(encoding="utf-8")))


# ============================================================
# Signed release entries
# ============================================================

def sign_registry_entry(identity: BinaryIdentity, key_pair: KeyPair) -> Dict[str, Any]:
    """Produce a release entry signed by the release key."""
    entry = {
        "name": identity.name,
        "version": identity.version,
        "checksum": identity.checksum,
    }
    entry["signatures"] = [{
        "kid": key_pair.key_id,
        "alg": ALGORITHM,
        "sig_b64": key_pair.sign(canonicalize(entry)),
    }]
    return entry


def load_signed_registry(
    entries: Iterable[Dict[str, Any]],
    trusted_keys: Dict[str, Union[bytes, str]]
) -> InMemoryChecksumRegistry:
    """
    Build a registry from signed release entries.

    Every entry must carry at least one valid signature from a trusted
    release key.

    Raises:
        ValueError: for an unsigned entry or one with no valid signature
    """
    registry = InMemoryChecksumRegistry()
    for entry in entries:
        body = {k: entry[k] for k in ("name", "version", "checksum")}
        payload = canonicalize(body)
        signatures = entry.get("signatures", [])
        if not signatures:
            raise ValueError(f"Unsigned registry entry for {body['name']} {body['version']}")
        valid = any(
            sig.get("kid") in trusted_keys
            and sig.get("alg") == ALGORITHM
            and verify_signature(payload, sig.get("sig_b64", ""), trusted_keys[sig["kid"]])
            for sig in signatures
        )
        if not valid:
            raise ValueError(f"No trusted signature on registry entry for {body['name']} {body['version']}")
        registry.register(body["name"], body["version"], body["checksum"])
    return registry
