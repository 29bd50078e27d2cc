"""Tests for the structured logging system (audit_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from audit_kernel.domain.dtos import AuditContext, AuditOperation
from audit_kernel.exceptions import InvalidQueryError, StoreWriteError
from audit_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from audit_kernel.services.audit_context import bind_audit_context, current_audit_context


@pytest.fixture(autouse=True)
def _clean_logging():
    """Each test configures logging from scratch."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def json_log():
    """
    Configure logging into a buffer; returns ``(logger, lines)`` where
    ``lines()`` parses every emitted JSON line.
    """

    def _configure(level=logging.INFO):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        configure_logging(level=level, handler=handler)

        def lines() -> list[dict]:
            return [json.loads(line) for line in stream.getvalue().splitlines() if line]

        return get_logger("services.audit_store"), lines

    return _configure


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    def test_envelope(self, json_log):
        logger, lines = json_log()
        logger.info("audit_entry_appended")

        (line,) = lines()
        assert line["message"] == "audit_entry_appended"
        assert line["level"] == "INFO"
        assert line["logger"] == "audit_kernel.services.audit_store"
        assert line["ts"].endswith("+00:00")

    def test_extra_values_are_json_safe(self, json_log):
        logger, lines = json_log()
        entry_id = uuid4()
        logger.info(
            "audit_entry_appended",
            extra={
                "entry_id": entry_id,
                "operation": AuditOperation.SOFT_DELETE,
                "amount": Decimal("10.50"),
                "tables": frozenset({"users", "orders"}),
                "diff_fields": 2,
            },
        )

        (line,) = lines()
        assert line["entry_id"] == str(entry_id)
        assert line["operation"] == "soft_delete"
        assert line["amount"] == "10.50"
        assert line["tables"] == ["orders", "users"]
        assert line["diff_fields"] == 2

    def test_context_fields_win_over_extra(self, json_log):
        logger, lines = json_log()
        with LogContext.bind(table_name="users", record_id="u1"):
            logger.info("audit_entry_appended", extra={"table_name": "orders"})

        (line,) = lines()
        assert line["table_name"] == "users"
        assert line["record_id"] == "u1"

    def test_no_context_fields_when_unbound(self, json_log):
        logger, lines = json_log()
        logger.info("bare")
        assert "actor_id" not in lines()[0]
        assert "correlation_id" not in lines()[0]

    def test_kernel_error_fields(self, json_log):
        logger, lines = json_log()
        try:
            raise InvalidQueryError("date_from", "must not be after the end of the range")
        except InvalidQueryError:
            logger.error("audit_query_rejected", exc_info=True)

        (line,) = lines()
        assert line["exc_type"] == "InvalidQueryError"
        assert line["exc_code"] == "INVALID_QUERY"
        assert line["exc_field"] == "date_from"
        assert line["exc_reason"] == "must not be after the end of the range"
        assert "Traceback" in line["traceback"]

    def test_exception_instance_as_exc_info(self, json_log):
        logger, lines = json_log()
        exc = StoreWriteError("users", "u1", "database unavailable")
        logger.error("audit_write_failed", exc_info=exc)

        (line,) = lines()
        assert line["exc_code"] == "STORE_WRITE_FAILED"
        assert line["exc_table_name"] == "users"
        assert line["exc_record_id"] == "u1"

    def test_plain_exception_has_no_code(self, json_log):
        logger, lines = json_log()
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("unexpected")

        (line,) = lines()
        assert line["exc_type"] == "ValueError"
        assert line["exc_message"] == "boom"
        assert "exc_code" not in line

    def test_formatter_usable_standalone(self):
        record = logging.LogRecord("audit_kernel.x", logging.WARNING, __file__, 1, "purged", (), None)
        line = json.loads(StructuredFormatter().format(record))
        assert line["level"] == "WARNING"
        assert line["message"] == "purged"


# ---------------------------------------------------------------------------
# LogContext
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_is_additive(self):
        LogContext.set(correlation_id="c-1")
        LogContext.set(table_name="users")
        assert LogContext.get_all() == {"correlation_id": "c-1", "table_name": "users"}

    def test_none_leaves_value_alone(self):
        LogContext.set(record_id="r-1")
        LogContext.set(record_id=None, operation="update")
        assert LogContext.get_all() == {"record_id": "r-1", "operation": "update"}

    def test_clear(self):
        LogContext.set(actor_id="a", trace_id="t")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="tenant"):
            LogContext.set(tenant="acme")

    def test_bind_nests(self):
        LogContext.set(table_name="users")
        with LogContext.bind(table_name="orders", record_id="o-1"):
            assert LogContext.get_all() == {"table_name": "orders", "record_id": "o-1"}
        assert LogContext.get_all() == {"table_name": "users"}

    def test_bind_restores_after_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(table_name="users", operation="delete"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}


class TestAuditContextBinding:
    def test_binds_actor_into_log_context(self):
        actor = uuid4()
        ctx = AuditContext(actor_id=actor, session_id="s-9")
        with bind_audit_context(ctx):
            assert current_audit_context() is ctx
            assert LogContext.get_all() == {"actor_id": str(actor), "session_id": "s-9"}
        assert current_audit_context() is None
        assert LogContext.get_all() == {}

    def test_nested_binding_restores_outer(self):
        outer = AuditContext(actor_id=uuid4())
        inner = AuditContext(actor_id=uuid4())
        with bind_audit_context(outer):
            with bind_audit_context(inner):
                assert current_audit_context() is inner
            assert current_audit_context() is outer
            assert LogContext.get_all()["actor_id"] == str(outer.actor_id)


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_first_call_wins(self, json_log):
        logger, lines = json_log()
        second = StringIO()
        configure_logging(handler=logging.StreamHandler(second))

        logger.info("once")
        assert len(lines()) == 1
        assert second.getvalue() == ""
        assert len(logging.getLogger("audit_kernel").handlers) == 1

    def test_reset_allows_reconfigure(self, json_log):
        json_log()
        reset_logging()
        logger, lines = json_log()
        logger.info("after_reset")
        assert lines()[0]["message"] == "after_reset"

    def test_level_respected(self, json_log):
        logger, lines = json_log(level=logging.WARNING)
        logger.info("hidden")
        logger.debug("hidden")
        logger.warning("audit_retention_purge")
        assert [line["message"] for line in lines()] == ["audit_retention_purge"]

    def test_does_not_propagate_to_root(self, json_log):
        json_log()
        assert logging.getLogger("audit_kernel").propagate is False
