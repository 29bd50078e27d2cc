"""
Pytest fixtures for the audit kernel test suite.

Provides:
- A fresh database per test (SQLite in-memory by default)
- Store, query service and auditor fixtures wired to that database
- Deterministic clock and actor context
- Structured log capture

Environment Variables:
- DATABASE_URL: Optional PostgreSQL connection URL.  When set, tests run
  against it (tables are dropped and recreated per test).  When unset,
  each test gets its own SQLite in-memory database.
"""

import json
import logging
import os
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from audit_kernel.db.engine import build_engine, create_tables, drop_tables
from audit_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from audit_kernel.domain.clock import DeterministicClock
from audit_kernel.domain.dtos import AuditContext
from audit_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from audit_kernel.observability import AuditMetrics
from audit_kernel.services.audit_context import bind_audit_context
from audit_kernel.services.audit_middleware import MutationAuditor
from audit_kernel.services.audit_query_service import AuditQueryService
from audit_kernel.services.audit_store import AuditLogStore

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()
TEST_ACTOR_EMAIL = "auditor@example.com"

DEFAULT_TEST_URL = "sqlite:///:memory:"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_URL)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture audit_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, store):
            store.append(record)
            logs = captured_logs()
            assert any(r["message"] == "audit_entry_appended" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("audit_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """A database with the audit schema, triggers and ORM guards installed."""
    url = get_database_url()
    eng = build_engine(url)
    if eng.dialect.name != "sqlite":
        drop_tables(eng)
    create_tables(eng)
    register_immutability_listeners()
    yield eng
    register_immutability_listeners()
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def immutability_disabled():
    """Temporarily remove the ORM guards (tamper simulations only)."""
    unregister_immutability_listeners()
    yield
    register_immutability_listeners()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def audit_context(test_actor_id) -> AuditContext:
    return AuditContext(
        actor_id=test_actor_id,
        actor_email=TEST_ACTOR_EMAIL,
        ip_address="203.0.113.7",
        session_id="sess-1",
        user_agent="pytest",
    )


@pytest.fixture
def bound_context(audit_context):
    """Bind the test actor for the duration of the test."""
    with bind_audit_context(audit_context) as ctx:
        yield ctx


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def store(session_factory, deterministic_clock) -> AuditLogStore:
    return AuditLogStore(session_factory=session_factory, clock=deterministic_clock)


@pytest.fixture
def query_service(store, deterministic_clock) -> AuditQueryService:
    return AuditQueryService(store, clock=deterministic_clock)


@pytest.fixture
def metrics() -> AuditMetrics:
    return AuditMetrics()


@pytest.fixture
def auditor(store, deterministic_clock, metrics) -> MutationAuditor:
    return MutationAuditor(store, clock=deterministic_clock, metrics=metrics)


@pytest.fixture
def record_factory(audit_context, deterministic_clock):
    """
    Build checksummed records without going through the middleware.

    Usage::

        record = record_factory("users", "u1", "create", after={"name": "A"})
    """
    from audit_kernel.domain.entry_builder import build_audit_record

    def _build(
        table_name="users",
        record_id="u1",
        operation="create",
        before=None,
        after=None,
        context=None,
        occurred_at=None,
    ):
        if after is None and operation in ("create", "update", "restore"):
            after = {"name": "Alice"}
        if before is None and operation in ("update", "delete", "soft_delete"):
            before = {"name": "Alice"}
        return build_audit_record(
            table_name=table_name,
            record_id=record_id,
            operation=operation,
            before=before,
            after=after,
            context=context or audit_context,
            occurred_at=occurred_at or deterministic_clock.now(),
        )

    return _build
