"""Shared utility functions used across oddly modules."""
from __future__ import annotations

import hashlib
import json
import uuid
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal inputs hash equally."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def canonical_hash(value: Any) -> str:
    return sha256_hex(canonical_json(value).encode("utf-8"))


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (SQLite drops tzinfo on the way back)."""
    return datetime.now(UTC).replace(tzinfo=None)


def outside_tolerance(value: float, target: float, tolerance: float) -> bool:
    """True when *value* lies further than *tolerance* from *target*.

    The gap is rounded to nine places first, so a boundary value such as
    0.99 against 1.0 with tolerance 0.01 counts as inside.
    """
    return round(abs(value - target), 9) > tolerance
