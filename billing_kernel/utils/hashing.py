"""
Deterministic hashing utilities.

Webhook payloads and idempotent operation results are fingerprinted with
the functions below so a replayed result can be checked against what was
stored.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Serializer for types ``json`` does not handle natively.

    Raises:
        TypeError: If the object type is not supported.
    """
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Canonical JSON: sorted keys, no whitespace, stable rendering of
    Decimal, datetime, UUID and Enum values.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_compatible(data: Any) -> Any:
    """Round-trip through canonical JSON so the value can go in a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: Any) -> str:
    """SHA-256 hex digest (64 characters) of the canonical JSON form."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
