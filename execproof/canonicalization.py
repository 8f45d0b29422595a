"""
execproof Canonical JSON Encoding

Every value that is hashed, committed to, or signed goes through this
encoding so that prover and verifier derive identical bytes from
semantically identical structures.
"""

import json
from enum import Enum
from typing import Any, Dict, List, Union


def canonicalize(obj: Any) -> bytes:
    """
    Encode an object as canonical JSON bytes.

    Rules:
    - Object keys sorted lexicographically (Unicode code point order)
    - Compact form, no whitespace between tokens
    - UTF-8 output, no BOM
    - ``bytes`` values become lowercase hex strings
    - ``Enum`` members become their values
    - Arrays and tuples preserve order

    Raises:
        ValueError: for types with no canonical form (floats included,
            since their textual form is not stable across encoders)
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(canonical, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _canonicalize_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return _canonicalize_value(value.value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return _canonicalize_object(value)
    if isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    raise ValueError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    for key in obj:
        if not isinstance(key, str):
            raise ValueError(f"Object keys must be strings, got {type(key)}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    return [_canonicalize_value(item) for item in arr]
