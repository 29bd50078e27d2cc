"""
Module: audit_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  This is the single point of database
    connection configuration for the audit kernel.
Architecture position: Kernel > DB.  May import from db/base.py and db/triggers.py.
    MUST NOT import from services/, selectors/, domain/, or outer layers
    (except for create_tables/drop_tables which import models and triggers).

Invariants enforced:
    - PostgreSQL (psycopg2) is the production backend: QueuePool with
      pre-ping, READ COMMITTED isolation.
    - SQLite is supported for tests and local runs.  In-memory databases use
      a StaticPool so every session shares the one connection.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory called before
      init_engine_from_url().
    - OperationalError on deadlock during trigger installation (retried up to 3x).
"""

import atexit
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from audit_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

# Module-level engine and session factory
_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create an engine appropriate for the URL's dialect without registering it.

    Used directly by tests that want an isolated engine per test.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        in_memory = url.database in (None, "", ":memory:")
        kwargs: dict = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if in_memory:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Idempotent in the sense that a second call replaces the first; call
    reset_engine() in between to release the old pool.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    _engine = build_engine(database_url, echo=echo, **pool_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


_NOT_INITIALIZED = "Audit database not initialized; call init_engine_from_url() first."


def get_engine() -> Engine:
    """The module-level engine.  RuntimeError before init_engine_from_url()."""
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    The module-level session factory.

    AuditLogStore takes the factory rather than a session so that each
    append commits in its own transaction, apart from the business one.
    """
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed.  On exception it is
    rolled back and closed, and the exception is re-raised.
    """
    session = get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None, install_triggers: bool = True) -> None:
    """
    Create the audit tables and optionally install immutability triggers.

    Args:
        engine: Engine to use; defaults to the module-level engine.
        install_triggers: If True, install database-level append-only
            triggers on audit_entries.

    Raises:
        RuntimeError: If no engine is given and none is initialized.
        OperationalError: If trigger installation fails after 3 retries.
    """
    from audit_kernel.db.base import Base
    from audit_kernel.db.triggers import install_immutability_triggers

    import audit_kernel.models  # noqa: F401  (registers tables on Base.metadata)

    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    logger.info("audit_tables_created", extra={"dialect": engine.dialect.name})

    if install_triggers:
        _with_deadlock_retry(engine, install_immutability_triggers)


def _with_deadlock_retry(engine: Engine, action, attempts: int = 3) -> None:
    """Run DDL, retrying on PostgreSQL deadlocks against concurrent installers."""
    for attempt in range(1, attempts + 1):
        try:
            action(engine)
            return
        except OperationalError as exc:
            if "deadlock" not in str(exc).lower() or attempt == attempts:
                raise
            logger.warning(
                "trigger_install_deadlock_retry",
                extra={"attempt": attempt, "max_attempts": attempts},
            )
            engine.dispose()
            time.sleep(0.5 * attempt)


def drop_tables(engine: Engine | None = None) -> None:
    """
    Drop all audit tables. Use with caution - primarily for testing.
    """
    from audit_kernel.db.base import Base
    from audit_kernel.db.triggers import uninstall_immutability_triggers

    import audit_kernel.models  # noqa: F401

    engine = engine or get_engine()
    uninstall_immutability_triggers(engine)
    Base.metadata.drop_all(engine)


def reset_engine() -> None:
    """
    Reset the engine and session factory.

    Useful for test cleanup.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release all pooled connections."""
    if _engine is not None:
        try:
            _engine.dispose()
        except Exception:
            logger.debug("engine_dispose_failed_at_exit", exc_info=True)


atexit.register(_atexit_dispose)


def is_postgres(engine: Engine | None = None) -> bool:
    """Check if the given (or current) engine is PostgreSQL."""
    engine = engine or _engine
    if engine is None:
        return False
    return engine.dialect.name == "postgresql"
