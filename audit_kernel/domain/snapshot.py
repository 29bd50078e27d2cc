"""
Snapshot -- Redaction, normalization and diffing of record snapshots.

Responsibility:
    Turns raw record states (mappings of arbitrary Python values) into the
    schema-less JSON value space the audit log stores, strips secrets, and
    computes field-level differences and their human-readable summaries.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Called by the entry
    builder; never touches the database.

Invariants enforced:
    - Redaction happens before diffing and before storage; raw secrets are
      never persisted.
    - ``diff`` is ordered alphabetically by field and empty for deep-equal
      inputs.
    - Normalization is total over well-formed input and fails fast with
      InvalidSnapshotError otherwise (never silently truncates).

Failure modes:
    - InvalidSnapshotError naming the dotted path of the offending field:
      non-string keys, circular references, excessive depth, NaN/Infinity,
      unsupported value types, or a non-mapping root.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Set
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from audit_kernel.domain.dtos import MISSING, AuditOperation, AuditRecord, FieldChange
from audit_kernel.domain.policies import RedactionPolicy, SnapshotLimits, normalize_field_name
from audit_kernel.exceptions import InvalidSnapshotError
from audit_kernel.utils.hashing import canonicalize_json, format_decimal, format_timestamp

ROOT = "<root>"

DEFAULT_REDACTION = RedactionPolicy()
DEFAULT_LIMITS = SnapshotLimits()

# repr() switches to exponent notation from here; every such float is integral.
_EXPONENT_FLOAT_MIN = 1e16


def _child_path(path: str, key: str | int) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return key if path == ROOT else f"{path}.{key}"


# ---------------------------------------------------------------------------
# Normalization / validation
# ---------------------------------------------------------------------------


def _normalize_value(value: Any, path: str, depth: int, max_depth: int, seen: set[int]) -> Any:
    if depth > max_depth:
        raise InvalidSnapshotError(path, f"nesting exceeds maximum depth of {max_depth}")

    # str/int mixin enums must collapse to their value before the scalar checks.
    if isinstance(value, Enum):
        return _normalize_value(value.value, path, depth, max_depth, seen)

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value if type(value) is str else str.__str__(value)
    if isinstance(value, int):
        return value if type(value) is int else int(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise InvalidSnapshotError(path, "NaN and Infinity are not serializable")
        if abs(value) >= _EXPONENT_FLOAT_MIN:
            # JSONB re-emits exponent floats as integer text; store that form.
            return int(Decimal(repr(value)))
        return float(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise InvalidSnapshotError(path, "NaN and Infinity are not serializable")
        return format_decimal(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()

    if isinstance(value, (Mapping, list, tuple, Set)):
        marker = id(value)
        if marker in seen:
            raise InvalidSnapshotError(path, "circular reference")
        seen.add(marker)
        try:
            if isinstance(value, Mapping):
                result: dict[str, Any] = {}
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise InvalidSnapshotError(
                            path, f"keys must be strings, found {type(key).__name__}"
                        )
                    result[key] = _normalize_value(
                        item, _child_path(path, key), depth + 1, max_depth, seen
                    )
                return result
            items = [
                _normalize_value(item, _child_path(path, i), depth + 1, max_depth, seen)
                for i, item in enumerate(value)
            ]
            if isinstance(value, Set):
                items.sort(key=canonicalize_json)
            return items
        finally:
            seen.discard(marker)

    raise InvalidSnapshotError(path, f"unsupported value type {type(value).__name__}")


def normalize_snapshot(
    snapshot: Mapping[str, Any],
    limits: SnapshotLimits = DEFAULT_LIMITS,
) -> dict[str, Any]:
    """
    Convert a raw snapshot to plain JSON values.

    Decimal becomes a plain-notation string, datetimes ISO 8601 UTC, UUIDs
    and enums their string/value form, tuples lists and sets sorted lists.

    Raises:
        InvalidSnapshotError: If the snapshot is not a mapping or contains a
            disallowed shape.
    """
    if not isinstance(snapshot, Mapping):
        raise InvalidSnapshotError(
            ROOT, f"snapshot must be a mapping, got {type(snapshot).__name__}"
        )
    return _normalize_value(snapshot, ROOT, 0, limits.max_depth, set())


def validate_snapshot(snapshot: Any, limits: SnapshotLimits = DEFAULT_LIMITS) -> None:
    """Structural check: non-null mapping with only serializable, acyclic values."""
    if snapshot is None:
        raise InvalidSnapshotError(ROOT, "snapshot must not be null")
    normalize_snapshot(snapshot, limits)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def _redact_value(value: Any, fields: frozenset[str], marker: str) -> Any:
    if isinstance(value, Mapping):
        return {
            key: marker
            if isinstance(key, str) and normalize_field_name(key) in fields
            else _redact_value(item, fields, marker)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, fields, marker) for item in value]
    return value


def redact(
    record: Mapping[str, Any],
    policy: RedactionPolicy = DEFAULT_REDACTION,
) -> dict[str, Any]:
    """
    Return a copy of ``record`` with sensitive fields replaced by the marker.

    Matching is insensitive to case, underscores and hyphens, so ``apiKey``,
    ``api_key`` and ``API-KEY`` are all caught.  Applies at every depth,
    including mappings nested inside lists.
    """
    return _redact_value(record, policy.normalized_fields, policy.marker)


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------


def values_equal(left: Any, right: Any) -> bool:
    """Deep equality over JSON values that does not conflate bools with numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def diff(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> tuple[FieldChange, ...]:
    """
    Field-level changes between two (redacted, normalized) snapshots.

    Fields present on one side only are reported with the other side as
    MISSING.  A missing snapshot on either side yields no changes: creates
    and hard deletes carry their full state in before/after instead.
    """
    if before is None or after is None:
        return ()

    changes = []
    for name in sorted(set(before) | set(after)):
        old = before.get(name, MISSING)
        new = after.get(name, MISSING)
        if old is MISSING or new is MISSING or not values_equal(old, new):
            changes.append(FieldChange(field=name, old_value=old, new_value=new))
    return tuple(changes)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def _display(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def summarize(changes: tuple[FieldChange, ...] | list[FieldChange]) -> str:
    """
    Short human-readable description of a diff.

    Best effort; not covered by the checksum.
    """
    if not changes:
        return "no changes"
    parts = []
    for change in changes:
        if change.is_addition:
            parts.append(f"added {change.field}: {_display(change.new_value)}")
        elif change.is_removal:
            parts.append(f"removed {change.field}: {_display(change.old_value)}")
        else:
            parts.append(
                f"changed {change.field}: "
                f"{_display(change.old_value)} → {_display(change.new_value)}"
            )
    return "; ".join(parts)


_OPERATION_VERBS = {
    AuditOperation.CREATE: "Created new",
    AuditOperation.DELETE: "Deleted",
    AuditOperation.SOFT_DELETE: "Soft deleted",
    AuditOperation.RESTORE: "Restored",
}


def summarize_entry(record: AuditRecord) -> str:
    """Operation-level sentence for activity feeds."""
    table = record.table_name
    if record.operation is not AuditOperation.UPDATE:
        return f"{_OPERATION_VERBS[record.operation]} {table} record"

    fields = [change.field for change in record.diff]
    if not fields:
        return f"Updated {table} record (no changes detected)"
    if len(fields) <= 3:
        return f"Updated {table} record: {', '.join(fields)}"
    shown = ", ".join(fields[:3])
    return f"Updated {table} record: {shown} and {len(fields) - 3} more fields"
