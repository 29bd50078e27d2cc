"""
Observability hooks for the mutation audit path.

Audit writes are best-effort with respect to the business request, so every
failure must be visible somewhere else.  This module provides:

- AuditMetrics: in-process counters (observed, audited, failed per table,
  consecutive failures).  ``observed_by_table()`` feeds
  ``AuditLogStore.compute_coverage`` as the external attempted count.
- AuditFailureAlert: the payload handed to the alert handler.
- log_alert_handler: default alert handler emitting a CRITICAL structured log.

All events use a consistent ``observability_event`` field so log aggregators
can parse and build metrics.

Usage:
    metrics = AuditMetrics()
    auditor = MutationAuditor(store, metrics=metrics, alert_handler=log_alert_handler)
    ...
    store.compute_coverage(start, end, metrics.observed_by_table())
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from audit_kernel.logging_config import get_logger

logger = get_logger("observability")

# Standard event names for filtering in log pipelines
EVENT_AUDIT_WRITE_FAILED = "audit_write_failed"
EVENT_AUDIT_ALERT = "audit_failure_alert"


@dataclass(frozen=True)
class AuditFailureAlert:
    """Raised to the alert handler when audit writes keep failing."""

    table_name: str
    operation: str
    record_id: str | None
    error_type: str
    error_code: str | None
    message: str
    consecutive_failures: int
    occurred_at: datetime


AlertHandler = Callable[[AuditFailureAlert], None]


class AuditMetrics:
    """
    Thread-safe audit counters.

    ``observed`` counts mutations that reached the auditor and completed,
    ``audited`` those whose entry was appended, ``failures`` those whose
    audit write failed.  A success resets ``consecutive_failures``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._observed: Counter[str] = Counter()
        self._audited: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()
        self._consecutive_failures = 0

    def record_observed(self, table_name: str) -> None:
        with self._lock:
            self._observed[table_name] += 1

    def record_audited(self, table_name: str) -> None:
        with self._lock:
            self._audited[table_name] += 1
            self._consecutive_failures = 0

    def record_failure(self, table_name: str) -> int:
        """Count a failed audit write; returns the consecutive failure count."""
        with self._lock:
            self._failures[table_name] += 1
            self._consecutive_failures += 1
            return self._consecutive_failures

    @property
    def failure_count(self) -> int:
        with self._lock:
            return sum(self._failures.values())

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def observed_by_table(self) -> dict[str, int]:
        with self._lock:
            return dict(self._observed)

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time copy of all counters."""
        with self._lock:
            return {
                "observed": dict(self._observed),
                "audited": dict(self._audited),
                "failures": dict(self._failures),
                "consecutive_failures": self._consecutive_failures,
            }

    def reset(self) -> None:
        with self._lock:
            self._observed.clear()
            self._audited.clear()
            self._failures.clear()
            self._consecutive_failures = 0


def log_alert_handler(alert: AuditFailureAlert) -> None:
    """Default alert handler: one CRITICAL structured log line per alert."""
    logger.critical(
        "audit_failure_alert",
        extra={
            "observability_event": EVENT_AUDIT_ALERT,
            "table_name": alert.table_name,
            "operation": alert.operation,
            "record_id": alert.record_id,
            "error_type": alert.error_type,
            "error_code": alert.error_code,
            "error_message": alert.message,
            "consecutive_failures": alert.consecutive_failures,
            "alert_occurred_at": alert.occurred_at,
        },
    )
