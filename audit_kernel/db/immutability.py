"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

The audit log is append-only.  Once an entry is written it is never updated
or deleted by the application; corrections are new entries that reference
the same record id.  The only sanctioned removal is the retention purge,
run out-of-band.

This module is the FIRST layer of enforcement:

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/triggers.py (database triggers)
    - Catches raw SQL and direct database access
    - Fires AT the database level, independent of application code

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_audit_entry_update() --> ImmutabilityViolationError
    [before_delete event] --> _check_audit_entry_delete() --> ImmutabilityViolationError

    session.execute(update(AuditEntry) / delete(AuditEntry))
         |
         v
    [do_orm_execute event] --> _check_bulk_statement() --> ImmutabilityViolationError
                               (unless the statement carries the
                                audit_retention_purge execution option)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable          | Why
------------------|-------------------------|----------------------------------
AuditEntry        | ALWAYS (from creation)  | The audit trail is the evidence
CoverageMetadata  | never                   | Recomputed wholesale by the store

===============================================================================
USAGE
===============================================================================

    from audit_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Session

from audit_kernel.exceptions import ImmutabilityViolationError
from audit_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Execution option that authorizes the retention purge's bulk delete.
PURGE_EXECUTION_OPTION = "audit_retention_purge"


def _block(entity_id: str, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "AuditEntry", "entity_id": entity_id, "operation": operation},
    )
    raise ImmutabilityViolationError(entity_type="AuditEntry", entity_id=entity_id, reason=reason)


def _check_audit_entry_update(mapper, connection, target):
    """Mapper ``before_update``: no AuditEntry row is ever modified."""
    _block(str(target.id), "UPDATE", "Audit entries are immutable and cannot be modified")


def _check_audit_entry_delete(mapper, connection, target):
    """Mapper ``before_delete``: rows leave only through the retention purge."""
    _block(str(target.id), "DELETE", "Audit entries cannot be deleted outside the retention purge")


def _check_bulk_statement(orm_execute_state: ORMExecuteState):
    """
    Block ORM bulk UPDATE/DELETE statements against audit_entries.

    Mapper events do not fire for bulk statements, so they are inspected
    here.  A DELETE carrying the purge execution option is let through;
    a bulk UPDATE never is.
    """
    state = orm_execute_state
    if not (state.is_update or state.is_delete):
        return

    from audit_kernel.models.audit_entry import AuditEntry

    if state.bind_mapper is None or state.bind_mapper.class_ is not AuditEntry:
        return
    if state.is_delete and state.execution_options.get(PURGE_EXECUTION_OPTION):
        return

    operation = "UPDATE" if state.is_update else "DELETE"
    _block("*", f"BULK_{operation}", f"Bulk {operation.lower()} of audit entries is not permitted")


def _listeners():
    from audit_kernel.models.audit_entry import AuditEntry

    return (
        (AuditEntry, "before_update", _check_audit_entry_update),
        (AuditEntry, "before_delete", _check_audit_entry_delete),
        (Session, "do_orm_execute", _check_bulk_statement),
    )


def register_immutability_listeners():
    """
    Register the ORM guards.  Idempotent.

    Call once at startup, before any audit entry is written.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners():
    """
    Remove the ORM guards.

    WARNING: tests only, for simulating tampering that the integrity checks
    must then detect.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
