"""
Module: audit_kernel.db.base
Responsibility: Declarative base and column type decorators for all audit
    ORM models.  Provides the UUID primary key convention and the type
    annotation map that keeps column types consistent across models.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated primary key
      stored as String(36) for cross-database portability.
    - Timezone-aware timestamps: datetime columns use UTCDateTime, which
      always binds UTC and always returns aware UTC datetimes, even on
      SQLite where the driver discards tzinfo.

Failure modes:
    - ValueError when binding a non-datetime to a UTCDateTime column.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from audit_kernel.db.types import Checksum, RecordId, TableName


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
        - cache_ok=True enables SQLAlchemy statement caching.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(str(value))
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that round-trips as UTC on every dialect.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are bound as naive UTC and re-tagged on load.
    Naive inputs are interpreted as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise ValueError(f"UTCDateTime expects datetime, got {type(value).__name__}")
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all audit models.

    Guarantees:
        - id is a uuid4-generated UUID stored as String(36) unless the
          caller assigns one (audit entries are assigned their id when the
          record is built, because the checksum covers it).
        - datetime maps to UTCDateTime.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        Checksum: String(64),
        TableName: String(100),
        RecordId: String(100),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


# Re-export UUID for convenience
UUID = PyUUID
