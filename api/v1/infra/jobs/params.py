"""
Structural identity for job parameters.

Two parameter documents are the same job request when they are equal as
JSON values, regardless of key order or ``1`` vs ``1.0``. The canonical
form is hashed into ``Job.params_hash`` so lookups hit an index on every
backend; callers confirm equality on the loaded rows.
"""

import hashlib
import json
from typing import Any


def canonicalize(value: Any) -> Any:
    """Normalise a JSON-compatible value for structural comparison."""
    if isinstance(value, dict):
        return {str(k): canonicalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (int, float)):
        return value
    raise TypeError(f"Job parameters must be JSON-compatible, got {type(value).__name__}")


def params_hash(params: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the canonical parameter document."""
    canonical = json.dumps(
        canonicalize(params), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


def params_equal(left: dict[str, Any] | None, right: dict[str, Any] | None) -> bool:
    """Structural equality of two parameter documents."""
    return canonicalize(left or {}) == canonicalize(right or {})
