"""
Configuration module for execproof.

Centralizes configuration with environment variable support,
validation, and caching for file-backed settings.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("EXECPROOF_ENV", "dev")  # dev|stage|prod

# Challenge lifecycle
CHALLENGE_TTL_SECONDS = int(os.getenv("EXECPROOF_CHALLENGE_TTL_SECONDS", "30"))
# How long expired challenges, their commitments and finished sessions are kept
RETENTION_SECONDS = int(os.getenv("EXECPROOF_RETENTION_SECONDS", "300"))
NONCE_BYTES = int(os.getenv("EXECPROOF_NONCE_BYTES", "32"))
MIN_NONCE_BYTES = 16  # 128 bits

# Commitment blinding length
BLINDING_BYTES = 32
# Most recent blindings remembered for reuse detection
BLINDING_MEMORY = int(os.getenv("EXECPROOF_BLINDING_MEMORY", "100000"))

# External execution
SANDBOX_TIMEOUT_SECONDS = float(os.getenv("EXECPROOF_SANDBOX_TIMEOUT_SECONDS", "20"))
MAX_WORKERS = int(os.getenv("EXECPROOF_MAX_WORKERS", "4"))

# Paths
REGISTRY_PATH = os.getenv("EXECPROOF_REGISTRY_PATH", "registry/checksums.json")

# Logging
LOG_LEVEL = os.getenv("EXECPROOF_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("EXECPROOF_LOG_JSON", "1").lower() in ("1", "true", "yes")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("EXECPROOF_CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached JSON loader.
    Reloads files once their cached copy is older than the TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.monotonic() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.monotonic()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


def invalidate_config_cache() -> None:
    _config_cache.invalidate()


# ============================================================
# Validation
# ============================================================

def validate_config(
    nonce_bytes: Optional[int] = None,
    challenge_ttl_seconds: Optional[int] = None,
    registry_path: Optional[str] = None,
    max_workers: Optional[int] = None
) -> List[str]:
    """
    Validate configuration values.

    Arguments default to the environment-derived module values.

    Returns:
        List of human-readable problems; empty when the configuration is usable
    """
    nonce_bytes = NONCE_BYTES if nonce_bytes is None else nonce_bytes
    ttl = CHALLENGE_TTL_SECONDS if challenge_ttl_seconds is None else challenge_ttl_seconds
    registry_path = REGISTRY_PATH if registry_path is None else registry_path
    max_workers = MAX_WORKERS if max_workers is None else max_workers

    problems = []
    if nonce_bytes < MIN_NONCE_BYTES:
        problems.append(
            f"nonce length {nonce_bytes} bytes is below the {MIN_NONCE_BYTES}-byte minimum"
        )
    if ttl <= 0:
        problems.append(f"challenge TTL must be positive, got {ttl}")
    if max_workers <= 0:
        problems.append(f"worker pool size must be positive, got {max_workers}")
    if registry_path and not Path(registry_path).exists():
        problems.append(f"checksum registry not found at {registry_path}")
    return problems


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    return ENV == "prod"


def is_debug() -> bool:
    return os.getenv("EXECPROOF_DEBUG", "").lower() in ("1", "true", "yes")
