"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from audit_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from audit_kernel.domain.dtos import (
    MISSING,
    Anomaly,
    AnomalyRule,
    AuditContext,
    AuditLogPage,
    AuditOperation,
    AuditRecord,
    AuditSummary,
    CoverageReport,
    FieldChange,
    IntegrityReport,
    TableCoverage,
    TableStats,
)
from audit_kernel.domain.entry_builder import (
    AUDIT_FORMAT_VERSION,
    build_audit_record,
    check_operation_states,
)
from audit_kernel.domain.policies import (
    AnomalyThresholds,
    FailureMode,
    FailurePolicy,
    MiddlewareSettings,
    QueryLimits,
    RedactionPolicy,
    SnapshotLimits,
)
from audit_kernel.domain.snapshot import (
    diff,
    normalize_snapshot,
    redact,
    summarize,
    summarize_entry,
    validate_snapshot,
)

__all__ = [
    # Clock
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # DTOs
    "MISSING",
    "Anomaly",
    "AnomalyRule",
    "AuditContext",
    "AuditLogPage",
    "AuditOperation",
    "AuditRecord",
    "AuditSummary",
    "CoverageReport",
    "FieldChange",
    "IntegrityReport",
    "TableCoverage",
    "TableStats",
    # Entry builder
    "AUDIT_FORMAT_VERSION",
    "build_audit_record",
    "check_operation_states",
    # Policies
    "AnomalyThresholds",
    "FailureMode",
    "FailurePolicy",
    "MiddlewareSettings",
    "QueryLimits",
    "RedactionPolicy",
    "SnapshotLimits",
    # Snapshots
    "diff",
    "normalize_snapshot",
    "redact",
    "summarize",
    "summarize_entry",
    "validate_snapshot",
]
