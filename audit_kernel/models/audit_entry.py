"""
Module: audit_kernel.models.audit_entry
Responsibility: ORM persistence for mutation audit entries.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Audit entries are append-only; no UPDATE or DELETE (ORM listeners in
      db/immutability.py + database triggers in db/triggers.py).  The
      retention purge is the one sanctioned removal.
    - checksum = SHA-256 over the canonical entry content (every column
      except checksum).  Validated by AuditLogStore.verify_integrity.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityMismatchError when re-verification detects a checksum mismatch.

Audit relevance:
    AuditEntry IS the audit trail.  Every create, update, delete, soft
    delete and restore passing through the mutation auditor produces one row.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from audit_kernel.db.base import Base, UTCDateTime, UUIDString
from audit_kernel.db.types import Checksum, JSONPayload, RecordId, TableName


class AuditEntry(Base):
    """
    One immutable record per mutation.

    Contract:
        Rows are written once by AuditLogStore.append and never changed.
        Corrections are new rows with the same (table_name, record_id).

    Non-goals:
        - This model does NOT compute or check the checksum; that is the
          responsibility of the entry builder and the store.
    """

    __tablename__ = "audit_entries"

    __table_args__ = (
        Index("idx_audit_entries_record", "table_name", "record_id", "occurred_at"),
        Index("idx_audit_entries_actor", "actor_id", "occurred_at"),
        Index("idx_audit_entries_occurred", "occurred_at", "id"),
        Index("idx_audit_entries_operation", "operation"),
    )

    # Logical table the mutation targeted
    table_name: Mapped[TableName] = mapped_column(nullable=False)

    # Identifier of the affected record (stringified)
    record_id: Mapped[RecordId] = mapped_column(nullable=False)

    # AuditOperation value
    operation: Mapped[str] = mapped_column(String(20), nullable=False)

    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)

    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)

    # List of FieldChange.to_dict()
    diff: Mapped[list[dict[str, Any]]] = mapped_column(JSONPayload, nullable=False, default=list)

    # SHA-256 hex over canonical content
    checksum: Mapped[Checksum] = mapped_column(nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Retained in case the user row is later deleted
    actor_email_backup: Mapped[str | None] = mapped_column(String(255), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    audit_version: Mapped[str] = mapped_column(String(10), nullable=False, default="1.0")

    def __repr__(self) -> str:
        return f"<AuditEntry {self.operation} on {self.table_name}:{self.record_id}>"
