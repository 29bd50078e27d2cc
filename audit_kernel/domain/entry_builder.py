"""
EntryBuilder -- Assembles checksummed AuditRecords from raw snapshots.

Responsibility:
    Runs the write-side pipeline for a single mutation:
    normalize -> redact -> operation consistency -> diff -> checksum.
    The result is an AuditRecord ready for ``AuditSink.append``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Time and identity
    are supplied by the caller (middleware uses the injected Clock).

Invariants enforced:
    - create has an after-state and no before-state.
    - update has both states.
    - delete has a before-state and no after-state.
    - soft_delete has a before-state; restore has an after-state.
    - The diff is computed only when both sides are present.
    - The checksum covers every persisted field, including ``id``.

Failure modes:
    - InvalidSnapshotError for malformed snapshots, operation/state
      mismatches, or empty table_name/record_id.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from audit_kernel.domain.dtos import AuditContext, AuditOperation, AuditRecord, utc
from audit_kernel.domain.policies import RedactionPolicy, SnapshotLimits
from audit_kernel.domain.snapshot import (
    DEFAULT_LIMITS,
    DEFAULT_REDACTION,
    ROOT,
    diff,
    normalize_snapshot,
    redact,
)
from audit_kernel.exceptions import InvalidSnapshotError
from audit_kernel.utils.hashing import compute_entry_checksum

AUDIT_FORMAT_VERSION = "1.0"

# operation -> (before required, before allowed, after required, after allowed)
_STATE_RULES: dict[AuditOperation, tuple[bool, bool, bool, bool]] = {
    AuditOperation.CREATE: (False, False, True, True),
    AuditOperation.UPDATE: (True, True, True, True),
    AuditOperation.DELETE: (True, True, False, False),
    AuditOperation.SOFT_DELETE: (True, True, False, True),
    AuditOperation.RESTORE: (False, True, True, True),
}


def check_operation_states(
    operation: AuditOperation,
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> None:
    """Raise InvalidSnapshotError if the states present do not fit the operation."""
    before_required, before_allowed, after_required, after_allowed = _STATE_RULES[operation]

    if before is None and before_required:
        raise InvalidSnapshotError("before_state", f"required for {operation.value}")
    if before is not None and not before_allowed:
        raise InvalidSnapshotError("before_state", f"must be absent for {operation.value}")
    if after is None and after_required:
        raise InvalidSnapshotError("after_state", f"required for {operation.value}")
    if after is not None and not after_allowed:
        raise InvalidSnapshotError("after_state", f"must be absent for {operation.value}")


def _prepare(
    snapshot: Mapping[str, Any] | None,
    side: str,
    redaction: RedactionPolicy,
    limits: SnapshotLimits,
) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    try:
        normalized = normalize_snapshot(snapshot, limits)
    except InvalidSnapshotError as exc:
        path = side if exc.field == ROOT else f"{side}.{exc.field}"
        raise InvalidSnapshotError(path, exc.reason) from exc
    return redact(normalized, redaction)


def build_audit_record(
    *,
    table_name: str,
    record_id: Any,
    operation: AuditOperation | str,
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
    context: AuditContext,
    occurred_at: datetime,
    entry_id: UUID | None = None,
    redaction: RedactionPolicy = DEFAULT_REDACTION,
    limits: SnapshotLimits = DEFAULT_LIMITS,
) -> AuditRecord:
    """
    Build a checksummed audit record for one completed mutation.

    Args:
        table_name: Logical table the mutation targeted.
        record_id: Identifier of the affected record (stringified).
        operation: Kind of mutation.
        before: Raw prior state, or None.
        after: Raw resulting state, or None.
        context: Ambient actor and request information.
        occurred_at: Completion time, normally from the injected Clock.
        entry_id: Optional pre-assigned id; a fresh uuid4 otherwise.

    Raises:
        InvalidSnapshotError: See module docstring.
    """
    if not table_name:
        raise InvalidSnapshotError("table_name", "must be non-empty")
    if record_id is None or str(record_id) == "":
        raise InvalidSnapshotError("record_id", "must be non-empty")

    op = AuditOperation(operation)

    before_state = _prepare(before, "before_state", redaction, limits)
    after_state = _prepare(after, "after_state", redaction, limits)
    check_operation_states(op, before_state, after_state)

    changes = diff(before_state, after_state)

    unsigned = AuditRecord(
        id=entry_id or uuid4(),
        table_name=table_name,
        record_id=str(record_id),
        operation=op,
        before_state=before_state,
        after_state=after_state,
        diff=changes,
        checksum="",
        actor_id=context.actor_id,
        actor_email_backup=context.actor_email,
        occurred_at=utc(occurred_at),
        ip_address=context.ip_address,
        session_id=context.session_id,
        user_agent=context.user_agent,
        reason=context.reason,
        audit_version=AUDIT_FORMAT_VERSION,
    )
    return _with_checksum(unsigned)


def _with_checksum(record: AuditRecord) -> AuditRecord:
    return replace(record, checksum=compute_entry_checksum(record.canonical_content()))
