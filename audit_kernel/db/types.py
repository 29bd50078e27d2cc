"""
Module: audit_kernel.db.types
Responsibility: Annotated type aliases for audit columns, so that models
    and selectors agree on widths and encodings.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    selectors/ or domain/.

The JSON payload type uses JSONB on PostgreSQL (indexable, and castable to
text for free-text search) and generic JSON elsewhere.
"""

from typing import Annotated

from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import JSONB

# Snapshot / diff payloads
JSONPayload = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# SHA-256 hash as hex string (64 characters)
Checksum = Annotated[str, String(64)]

# Logical table name targeted by a mutation
TableName = Annotated[str, String(100)]

# Stringified identifier of the mutated record
RecordId = Annotated[str, String(100)]

# Max width of table_name and record_id, shared with query validation
IDENTIFIER_MAX = 100
