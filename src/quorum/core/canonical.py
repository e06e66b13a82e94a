# src/quorum/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: Convert enums, datetimes, dataclasses and tuples to JSON-safe primitives
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
A request hash that depends on a float that is not a number would never
match again.
"""

import dataclasses
import hashlib
import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import rfc8785

# Version string stored alongside request hashes
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value contains NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(
                f"Cannot canonicalize non-finite float: {obj}. "
                "Use None for missing values, not NaN."
            )
        return obj

    if isinstance(obj, Enum):
        return _normalize_value(obj.value)

    if obj is None or isinstance(obj, (str, int, bool)):
        return obj

    if isinstance(obj, datetime):
        # Naive timestamps assumed UTC (explicit policy)
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).isoformat()

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _normalize_value(dataclasses.asdict(obj))

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a structure for canonical serialization."""
    if isinstance(data, dict):
        return {str(k): _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_normalize_for_canonical(v) for v in data]
    normalized = _normalize_value(data)
    if isinstance(normalized, (dict, list)):
        return _normalize_for_canonical(normalized)
    return normalized


def canonical_json(obj: Any) -> str:
    """Serialize to canonical JSON (RFC 8785).

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains unsupported types
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def request_hash(op: str, request: dict[str, Any]) -> str:
    """Idempotency key for a run: the op plus its normalized request."""
    return stable_hash({"op": op, "request": request})
