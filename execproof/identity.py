"""
execproof Binary Identity

A binary is identified by the SHA-256 of its file bytes. The checksum is
always recomputed from disk; a checksum supplied by a caller is never
taken at face value.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .hashing import CHECKSUM_ALGORITHM, file_checksum, is_digest
from .util import require_str


@dataclass(frozen=True)
class BinaryIdentity:
    """
    Identity of one version of a binary.

    Immutable once recorded. ``path`` is where the prover found the binary
    and carries no weight during verification; ``name`` and ``version`` are
    the keys into the verifier's checksum registry.
    """
    name: str
    version: str
    checksum: str
    path: Optional[str] = None
    checksum_algorithm: str = CHECKSUM_ALGORITHM

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("binary name must be a non-empty string")
        if not isinstance(self.version, str) or not self.version:
            raise ValueError("binary version must be a non-empty string")
        if self.checksum_algorithm != CHECKSUM_ALGORITHM:
            raise ValueError(f"Unsupported checksum algorithm: {self.checksum_algorithm}")
        if not is_digest(self.checksum):
            raise ValueError(f"Invalid checksum: {self.checksum!r}")

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.name,
            "version": self.version,
            "checksum_algorithm": self.checksum_algorithm,
            "checksum": self.checksum,
        }
        if self.path is not None:
            d["path"] = self.path
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BinaryIdentity':
        required = ["name", "version", "checksum"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        return cls(
            name=data["name"],
            version=data["version"],
            checksum=data["checksum"],
            path=require_str(data, "path", optional=True),
            checksum_algorithm=data.get("checksum_algorithm", CHECKSUM_ALGORITHM)
        )


def compute_binary_identity(
    path: Union[str, Path],
    name: Optional[str] = None,
    version: str = "unversioned"
) -> BinaryIdentity:
    """
    Hash a binary on disk and build its identity.

    Args:
        path: Location of the binary
        name: Registry name (defaults to the file name)
        version: Registry version label

    Raises:
        FileNotFoundError: if the path does not exist or is not a file
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Binary not found: {p}")
    return BinaryIdentity(
        name=name or p.name,
        version=version,
        checksum=file_checksum(p),
        path=str(p)
    )
