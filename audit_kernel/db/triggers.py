"""
Module: audit_kernel.db.triggers
Responsibility: Loading, installing, and verifying database-level
    append-only triggers on audit_entries (Layer 2 of 2).  This is the
    database-level complement to the ORM listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.  MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    PostgreSQL -- audit_entries rows: no UPDATE ever; no DELETE unless the
        transaction ran ``SET LOCAL audit_kernel.allow_purge = 'on'``.
    SQLite     -- audit_entries rows: no UPDATE ever.  SQLite has no
        per-transaction settings, so DELETE is guarded by the ORM layer only.

Failure modes:
    - PostgreSQL RAISE EXCEPTION / SQLite RAISE(ABORT) on violation (surfaced
      by SQLAlchemy as IntegrityError or DatabaseError).
    - FileNotFoundError if SQL files are missing from the sql/ directory.
    - OperationalError on deadlock during installation (caller retries).
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

# =============================================================================
# SQL File Loading
# =============================================================================

SQL_DIR = Path(__file__).parent / "sql"

# Ordered trigger files per dialect.  SQLite executes one statement per
# call, so each SQLite file holds exactly one statement.
TRIGGER_FILES = {
    "postgresql": ["01_audit_entry.sql"],
    "sqlite": ["01_audit_entry_update.sql"],
}

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = {
    "postgresql": [
        "trg_audit_entry_immutability_update",
        "trg_audit_entry_immutability_delete",
    ],
    "sqlite": [
        "trg_audit_entry_immutability_update",
    ],
}

# Session setting consulted by the PostgreSQL delete trigger.
PURGE_SETTING = "audit_kernel.allow_purge"


def _supported(engine: Engine) -> bool:
    return engine.dialect.name in TRIGGER_FILES


def _load_sql_file(dialect: str, filename: str) -> str:
    """
    Load SQL content from the dialect's directory.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    return (SQL_DIR / dialect / filename).read_text(encoding="utf-8")


def _execute_file(conn: Connection, dialect: str, filename: str) -> None:
    conn.exec_driver_sql(_load_sql_file(dialect, filename))


# =============================================================================
# Public API
# =============================================================================


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level append-only triggers for the engine's dialect.

    Preconditions: Tables must exist (call after create_all()).
    Postconditions: All triggers in ALL_TRIGGER_NAMES[dialect] are installed.
        Installation is idempotent.  Unsupported dialects are a no-op.
    """
    if not _supported(engine):
        return
    dialect = engine.dialect.name
    with engine.connect() as conn:
        for filename in TRIGGER_FILES[dialect]:
            _execute_file(conn, dialect, filename)
        conn.commit()


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level append-only triggers.

    WARNING: Only use this for tests and migrations that must rewrite
    historical rows.  Re-install immediately afterwards.
    """
    if not _supported(engine):
        return
    dialect = engine.dialect.name
    with engine.connect() as conn:
        _execute_file(conn, dialect, DROP_FILE)
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the audit triggers currently installed, sorted by name."""
    if not _supported(engine):
        return []
    dialect = engine.dialect.name
    names = ALL_TRIGGER_NAMES[dialect]

    if dialect == "postgresql":
        query = text(
            "SELECT tgname FROM pg_trigger WHERE tgname = ANY(:names) ORDER BY tgname"
        )
        params = {"names": names}
    else:
        query = text(
            "SELECT name FROM sqlite_master WHERE type = 'trigger' "
            "AND tbl_name = 'audit_entries' ORDER BY name"
        )
        params = {}

    with engine.connect() as conn:
        return [row[0] for row in conn.execute(query, params) if row[0] in names]


def get_missing_triggers(engine: Engine) -> list[str]:
    """Triggers that should be installed for this dialect but aren't."""
    if not _supported(engine):
        return []
    installed = set(get_installed_triggers(engine))
    return sorted(set(ALL_TRIGGER_NAMES[engine.dialect.name]) - installed)


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger for the engine's dialect is installed."""
    return _supported(engine) and not get_missing_triggers(engine)


def allow_purge_in_transaction(conn: Connection) -> None:
    """
    Authorize DELETEs on audit_entries for the rest of the current transaction.

    Only meaningful on PostgreSQL; other dialects have nothing to set.
    """
    if conn.dialect.name == "postgresql":
        conn.execute(text(f"SET LOCAL {PURGE_SETTING} = 'on'"))
