"""
Typed Exception Hierarchy for the Audit Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the audit pipeline react to failures by category, not by message:
the middleware swallows store failures, the read API turns query errors into
client errors, and operators page on integrity mismatches.  Every error
therefore has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        page = query_service.query_logs(filters)
    except InvalidQueryError as e:
        return {"error": e.code, "field": e.field, "reason": e.reason}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    AuditKernelError (base)
    |
    +-- AuditError
    |   +-- InvalidSnapshotError
    |   +-- StoreWriteError
    |   +-- IntegrityMismatchError
    |   +-- AuditContextMissingError
    |
    +-- QueryError
    |   +-- InvalidQueryError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                   | When Raised
----------------|------------------------|------------------------------------------
Audit           | INVALID_SNAPSHOT       | Before/after payload is malformed
                | STORE_WRITE_FAILED     | Appending an entry failed
                | INTEGRITY_MISMATCH     | Recomputed checksum != stored checksum
                | AUDIT_CONTEXT_MISSING  | Mutation reached the auditor with no actor
----------------|------------------------|------------------------------------------
Query           | INVALID_QUERY          | Filter violates bounds or is unknown
----------------|------------------------|------------------------------------------
Immutability    | IMMUTABILITY_VIOLATION | UPDATE/DELETE of an audit entry

===============================================================================
PROPAGATION
===============================================================================

Snapshot and query errors propagate to their caller (fail closed).
StoreWriteError raised on the middleware path is captured, logged and counted
but never reaches the business caller (fail open, fail loud).
IntegrityMismatchError is surfaced to operators and never auto-corrected.

===============================================================================
"""


class AuditKernelError(Exception):
    """
    Base exception for all audit kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "AUDIT_KERNEL_ERROR"


# Audit pipeline exceptions


class AuditError(AuditKernelError):
    """Base exception for audit pipeline errors."""

    code: str = "AUDIT_ERROR"


class InvalidSnapshotError(AuditError):
    """A before/after snapshot is malformed and must not be stored."""

    code: str = "INVALID_SNAPSHOT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid snapshot at '{field}': {reason}")


class StoreWriteError(AuditError):
    """Persisting an audit entry failed."""

    code: str = "STORE_WRITE_FAILED"

    def __init__(self, table_name: str, record_id: str, reason: str):
        self.table_name = table_name
        self.record_id = record_id
        self.reason = reason
        super().__init__(
            f"Failed to append audit entry for {table_name}:{record_id}: {reason}"
        )


class IntegrityMismatchError(AuditError):
    """A stored entry's checksum does not match its recomputed checksum."""

    code: str = "INTEGRITY_MISMATCH"

    def __init__(self, entry_id: str, expected_checksum: str, actual_checksum: str):
        self.entry_id = entry_id
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum
        super().__init__(
            f"Audit entry {entry_id} failed integrity check: "
            f"expected {expected_checksum}, found {actual_checksum}"
        )


class AuditContextMissingError(AuditError):
    """A mutation reached the auditor without an authenticated actor."""

    code: str = "AUDIT_CONTEXT_MISSING"

    def __init__(self, table_name: str, operation: str):
        self.table_name = table_name
        self.operation = operation
        super().__init__(
            f"No audit context bound for {operation} on {table_name}; "
            "unauthenticated calls must be rejected before reaching the auditor"
        )


# Query exceptions


class QueryError(AuditKernelError):
    """Base exception for read-side errors."""

    code: str = "QUERY_ERROR"


class InvalidQueryError(QueryError):
    """Caller-supplied filter violates bounds or names an unknown field."""

    code: str = "INVALID_QUERY"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid query field '{field}': {reason}")


# Immutability exceptions


class ImmutabilityError(AuditKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
