"""
Deterministic hashing utilities.

All hashing in the audit kernel must be deterministic and reproducible:
an entry's checksum recomputed years later over the same canonical content
must match the stored value.  This module provides the canonical
serialization and the SHA-256 helpers used throughout.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def format_decimal(value: Decimal) -> str:
    """Plain-notation Decimal with trailing zeros removed ("100", not "1E+2")."""
    normalized = value.normalize()
    text = format(normalized, "f")
    return "0" if text in ("-0", "") else text


def format_timestamp(value: datetime) -> str:
    """ISO 8601 in UTC.  Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return format_decimal(obj)
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)
    - NaN and Infinity are rejected (ValueError)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
        allow_nan=False,
    )


def hash_payload(payload: dict | list) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_entry_checksum(content: dict[str, Any]) -> str:
    """
    Compute the integrity checksum of an audit entry.

    ``content`` is ``AuditRecord.canonical_content()``: every persisted
    field except the checksum itself.  Any change to any field changes
    the digest.
    """
    return hash_payload(content)
