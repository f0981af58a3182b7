"""
Canonical JSON serialization for deterministic hashing and signing.

Sorted keys, no whitespace, UTF-8. Decimals are written as strings so the
same amount always hashes the same way.
"""

import hashlib
import json
from decimal import Decimal
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return format(obj.normalize(), "f")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonical_json(obj: Any) -> str:
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_default,
    )


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json(obj).encode("utf-8")


def sha256_hex(obj: Any) -> str:
    """SHA-256 of the canonical JSON form, hex encoded."""
    return hashlib.sha256(canonical_json_bytes(obj)).hexdigest()
