"""
DTOs -- Pure domain data transfer objects for the audit pipeline.

Responsibility:
    Defines the immutable data structures that flow through the audit
    pipeline: AuditContext (ambient caller), FieldChange (one diff line),
    AuditRecord (a fully built, checksummed entry), and the read-side
    result types (pages, coverage, anomalies, summaries).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Free of ORM dependencies.  The row-to-record converter lives in the
    audit log selector, which is the read boundary.

Invariants enforced:
    - AuditOperation is a closed enum; open strings never reach the store.
    - FieldChange distinguishes "absent" (MISSING) from an explicit null.
    - AuditRecord.canonical_content() is the exact payload covered by the
      checksum; nothing outside it is integrity-protected.

Data flow:
    AuditContext + raw snapshots -> AuditRecord -> AuditEntry row -> AuditRecord
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


class AuditOperation(str, Enum):
    """Kinds of mutation the audit log records.

    Contract: closed set.  Adding a member requires updating the entry
    builder's consistency rules and the middleware's path inference.
    """

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"

    @property
    def captures_before(self) -> bool:
        """True for operations whose prior state is fetched before running."""
        return self in (AuditOperation.UPDATE, AuditOperation.DELETE, AuditOperation.SOFT_DELETE)

    @property
    def is_delete(self) -> bool:
        return self in (AuditOperation.DELETE, AuditOperation.SOFT_DELETE)


class _Missing:
    """Sentinel type for a field absent on one side of a diff."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class FieldChange:
    """One field-level change between two snapshots."""

    field: str
    old_value: Any = MISSING
    new_value: Any = MISSING

    @property
    def is_addition(self) -> bool:
        return self.old_value is MISSING

    @property
    def is_removal(self) -> bool:
        return self.new_value is MISSING

    def to_dict(self) -> dict[str, Any]:
        """Storage form.  A missing side is omitted rather than stored as null."""
        data: dict[str, Any] = {"field": self.field}
        if self.old_value is not MISSING:
            data["old_value"] = self.old_value
        if self.new_value is not MISSING:
            data["new_value"] = self.new_value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldChange:
        return cls(
            field=data["field"],
            old_value=data.get("old_value", MISSING),
            new_value=data.get("new_value", MISSING),
        )


@dataclass(frozen=True)
class AuditContext:
    """Ambient identity and request information for one mutating call."""

    actor_id: UUID
    actor_email: str | None = None
    ip_address: str | None = None
    session_id: str | None = None
    user_agent: str | None = None
    reason: str | None = None

    def without_request_info(self) -> AuditContext:
        return replace(self, ip_address=None, session_id=None, user_agent=None)


@dataclass(frozen=True)
class AuditRecord:
    """
    A fully built audit entry.

    Contract:
        Produced by ``build_audit_record`` (write side) or by the store when
        reading rows back.  ``checksum`` covers ``canonical_content()``.
    """

    id: UUID
    table_name: str
    record_id: str
    operation: AuditOperation
    before_state: dict[str, Any] | None
    after_state: dict[str, Any] | None
    diff: tuple[FieldChange, ...]
    checksum: str
    actor_id: UUID | None
    actor_email_backup: str | None
    occurred_at: datetime
    ip_address: str | None = None
    session_id: str | None = None
    user_agent: str | None = None
    reason: str | None = None
    audit_version: str = "1.0"

    def canonical_content(self) -> dict[str, Any]:
        """The dict the checksum is computed over (everything but the checksum)."""
        return {
            "id": str(self.id),
            "table_name": self.table_name,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "diff": [change.to_dict() for change in self.diff],
            "actor_id": str(self.actor_id) if self.actor_id is not None else None,
            "actor_email_backup": self.actor_email_backup,
            "occurred_at": utc(self.occurred_at),
            "ip_address": self.ip_address,
            "session_id": self.session_id,
            "user_agent": self.user_agent,
            "reason": self.reason,
            "audit_version": self.audit_version,
        }

    def without_states(self) -> AuditRecord:
        """Copy with before/after snapshots stripped (diff and checksum kept)."""
        return replace(self, before_state=None, after_state=None)


# ---------------------------------------------------------------------------
# Read-side results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogPage:
    """One page of query results with an opaque keyset cursor."""

    entries: tuple[AuditRecord, ...]
    next_cursor: str | None
    has_more: bool


@dataclass(frozen=True)
class TableCoverage:
    table_name: str
    mutations_observed: int | None
    mutations_audited: int
    coverage_pct: float | None


@dataclass(frozen=True)
class CoverageReport:
    """Per-table audited-vs-observed ratios for one window."""

    window_start: datetime | None
    window_end: datetime | None
    computed_at: datetime | None
    tables: tuple[TableCoverage, ...] = ()

    @property
    def is_empty(self) -> bool:
        return len(self.tables) == 0

    @property
    def total_audited(self) -> int:
        return sum(t.mutations_audited for t in self.tables)

    @property
    def total_observed(self) -> int | None:
        counts = [t.mutations_observed for t in self.tables]
        if not counts or any(c is None for c in counts):
            return None
        return sum(counts)

    def for_table(self, table_name: str) -> TableCoverage | None:
        for table in self.tables:
            if table.table_name == table_name:
                return table
        return None


class AnomalyRule(str, Enum):
    EXCESSIVE_DELETES = "excessive_deletes"
    EXCESSIVE_OPERATIONS = "excessive_operations"
    SUSPICIOUS_REASON = "suspicious_reason"


@dataclass(frozen=True)
class Anomaly:
    """A threshold breach attributed to one actor."""

    actor_id: UUID | None
    rule: AnomalyRule
    observed_count: int
    threshold: int
    window_start: datetime
    window_end: datetime


@dataclass(frozen=True)
class IntegrityReport:
    checked: int
    invalid_ids: tuple[UUID, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not self.invalid_ids


@dataclass(frozen=True)
class AuditSummary:
    date_from: datetime
    date_to: datetime
    total_operations: int
    operation_breakdown: dict[str, int] = field(default_factory=dict)
    table_breakdown: dict[str, int] = field(default_factory=dict)
    user_breakdown: dict[str, int] = field(default_factory=dict)
    daily_activity: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class TableStats:
    table_name: str
    total_operations: int
    operation_breakdown: dict[str, int]
    unique_actors: int
    date_from: datetime
    date_to: datetime
