"""
execproof Hash Commitments

    commitment_value = SHA-256(TAG || CJE(witness) || blinding)

Binding follows from collision resistance; hiding from the 256-bit blinding
drawn fresh for every session. The prover publishes the commitment value
while the challenge is still live, before it can learn anything about what
the verifier will accept, and the circuit later proves the commitment
opens to the nonce-bound witness.
"""

import hashlib
import hmac
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from . import config
from .binder import ExecutionWitness
from .canonicalization import canonicalize
from .hashing import DIGEST_PREFIX
from .util import secure_random_bytes

COMMITMENT_TAG = b"execproof/commitment/v1\x00"


@dataclass(frozen=True)
class Commitment:
    """
    A commitment and its opening data.

    Only ``value`` is ever shown to the verifier before proving.
    """
    value: str
    blinding: bytes = field(repr=False)


def fresh_blinding(length: int = config.BLINDING_BYTES) -> bytes:
    return secure_random_bytes(length)


def commitment_value(witness: ExecutionWitness, blinding: bytes) -> str:
    if len(blinding) < config.MIN_NONCE_BYTES:
        raise ValueError("blinding must be at least 16 bytes")
    h = hashlib.sha256()
    h.update(COMMITMENT_TAG)
    h.update(canonicalize(witness.to_dict()))
    h.update(bytes(blinding))
    return DIGEST_PREFIX + h.hexdigest()


def commit(witness: ExecutionWitness, blinding: bytes) -> Commitment:
    return Commitment(value=commitment_value(witness, blinding), blinding=bytes(blinding))


def open_commitment(commitment: Commitment, witness: ExecutionWitness, blinding: bytes) -> bool:
    """True iff ``commitment`` opens to exactly ``witness`` under ``blinding``."""
    try:
        recomputed = commitment_value(witness, blinding)
    except ValueError:
        return False
    return hmac.compare_digest(recomputed.encode('ascii'), commitment.value.encode('ascii'))


class HashCommit:
    """
    Commitment service that refuses to reuse a blinding.

    Only digests of used blindings are kept, and only the most recent
    ``memory`` of them.
    """

    def __init__(self, blinding_bytes: int = config.BLINDING_BYTES, memory: Optional[int] = None):
        self.blinding_bytes = blinding_bytes
        self.memory = config.BLINDING_MEMORY if memory is None else memory
        self._used: "OrderedDict[bytes, None]" = OrderedDict()
        self._lock = threading.Lock()

    def commit(self, witness: ExecutionWitness, blinding: Optional[bytes] = None) -> Commitment:
        """
        Commit to ``witness``, drawing a fresh blinding when none is given.

        Raises:
            ValueError: if ``blinding`` was already used by this instance
        """
        if blinding is None:
            blinding = fresh_blinding(self.blinding_bytes)
        marker = hashlib.sha256(bytes(blinding)).digest()
        with self._lock:
            if marker in self._used:
                raise ValueError("blinding has already been used")
            self._used[marker] = None
            while len(self._used) > self.memory:
                self._used.popitem(last=False)
        return commit(witness, blinding)

    def open(self, commitment: Commitment, witness: ExecutionWitness, blinding: bytes) -> bool:
        return open_commitment(commitment, witness, blinding)
