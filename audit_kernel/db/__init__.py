"""Database layer - engine, base classes, types, and append-only enforcement."""

from audit_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from audit_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from audit_kernel.db.types import Checksum, JSONPayload, RecordId, TableName

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "UUIDString",
    "UTCDateTime",
    "UUID",
    "Checksum",
    "JSONPayload",
    "RecordId",
    "TableName",
]
