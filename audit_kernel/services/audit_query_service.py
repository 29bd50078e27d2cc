"""
AuditQueryService -- Validated, paginated read access to the audit log.

Responsibility:
    Serves the read-side API: filtered log pages, record history, actor
    activity, anomaly heuristics, coverage, summaries, table statistics and
    batch integrity checks.

Architecture position:
    Kernel > Services -- stateless request/response.  Reads through
    AuditLogSelector inside the store's session scope; never writes.

Invariants enforced:
    - Every filter is validated BEFORE any storage access.  Bad input raises
      InvalidQueryError; it never degrades into an empty result.
    - Record history is returned in non-decreasing (occurred_at, id) order.
    - Anomaly detection is a deterministic threshold classifier: the same
      log and thresholds always yield the same anomalies in the same order.

Failure modes:
    - InvalidQueryError(field, reason) for inverted or over-long date
      ranges, out-of-bounds limits, malformed cursors, unknown fields,
      search terms of the wrong length.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from audit_kernel.db.types import IDENTIFIER_MAX
from audit_kernel.domain.clock import Clock, SystemClock
from audit_kernel.domain.dtos import (
    Anomaly,
    AnomalyRule,
    AuditLogPage,
    AuditOperation,
    AuditRecord,
    AuditSummary,
    CoverageReport,
    IntegrityReport,
    TableStats,
    utc,
)
from audit_kernel.domain.policies import AnomalyThresholds, QueryLimits
from audit_kernel.exceptions import InvalidQueryError
from audit_kernel.logging_config import get_logger
from audit_kernel.selectors.audit_log_selector import (
    AuditLogSelector,
    KeysetPosition,
    LogFilter,
)
from audit_kernel.services.audit_store import AuditLogStore

logger = get_logger("services.audit_query")

_DELETE_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class AuditLogQuery:
    """
    Filter for ``query_logs``.

    Values are validated and normalized by the service, so loosely typed
    input (ids and timestamps as strings) is accepted here.
    """

    table_name: str | None = None
    record_id: str | None = None
    actor_id: UUID | str | None = None
    operation: AuditOperation | str | None = None
    date_from: datetime | str | None = None
    date_to: datetime | str | None = None
    search: str | None = None
    limit: int | None = None
    cursor: str | None = None
    order: str = "desc"
    include_states: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AuditLogQuery:
        """Build a query from a plain mapping, rejecting unknown fields."""
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise InvalidQueryError(str(key), "unknown filter field")
        return cls(**data)


# ---------------------------------------------------------------------------
# Cursor encoding
# ---------------------------------------------------------------------------


def encode_cursor(record: AuditRecord, order: str) -> str:
    """Opaque url-safe token for the position after ``record``."""
    payload = {
        "o": order,
        "t": utc(record.occurred_at).isoformat(),
        "i": str(record.id),
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str, order: str) -> KeysetPosition:
    """
    Inverse of ``encode_cursor``.

    Raises:
        InvalidQueryError: Malformed token, or one minted for the other
            sort order.
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        if not isinstance(payload, dict):
            raise ValueError("cursor payload must be an object")
        cursor_order, occurred_at, entry_id = payload["o"], payload["t"], payload["i"]
        if not all(isinstance(part, str) for part in (cursor_order, occurred_at, entry_id)):
            raise ValueError("cursor fields must be strings")
        position = KeysetPosition(
            occurred_at=utc(datetime.fromisoformat(occurred_at)),
            entry_id=UUID(entry_id),
        )
    except (ValueError, KeyError, TypeError, UnicodeError, binascii.Error) as exc:
        raise InvalidQueryError("cursor", "malformed cursor") from exc

    if cursor_order != order:
        raise InvalidQueryError("cursor", f"cursor was issued for order '{cursor_order}'")
    return position


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------


def _as_datetime(field: str, value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise InvalidQueryError(field, "not an ISO 8601 timestamp") from exc
    if not isinstance(value, datetime):
        raise InvalidQueryError(field, "must be a datetime")
    return utc(value)


def _as_uuid(field: str, value: UUID | str | None) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise InvalidQueryError(field, "not a valid UUID") from exc


def _as_identifier(field: str, value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    if not text:
        raise InvalidQueryError(field, "must be non-empty")
    if len(text) > IDENTIFIER_MAX:
        raise InvalidQueryError(field, f"longer than {IDENTIFIER_MAX} characters")
    return text


def _as_limit(field: str, value: Any, default: int, maximum: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQueryError(field, "must be an integer")
    if value < 1 or value > maximum:
        raise InvalidQueryError(field, f"must be between 1 and {maximum}")
    return value


def _check_range(
    start: datetime, end: datetime, max_days: int, start_field: str = "date_from"
) -> None:
    if start > end:
        raise InvalidQueryError(start_field, "must not be after the end of the range")
    if end - start > timedelta(days=max_days):
        raise InvalidQueryError(start_field, f"range exceeds {max_days} days")


class AuditQueryService:
    """
    Read-side API over the audit log.

    Contract:
        Stateless.  Every method validates its arguments first, then opens
        one read scope on the store and returns frozen DTOs.

    Non-goals:
        - Does NOT write.  ``validate_integrity`` reports; it never repairs.
        - Does NOT learn thresholds; anomaly rules are explicit and tunable.
    """

    def __init__(
        self,
        store: AuditLogStore,
        clock: Clock | None = None,
        limits: QueryLimits | None = None,
        thresholds: AnomalyThresholds | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._limits = limits or QueryLimits()
        self._thresholds = thresholds or AnomalyThresholds()

    # ------------------------------------------------------------------
    # Log search
    # ------------------------------------------------------------------

    def _validate_log_query(
        self, query: AuditLogQuery
    ) -> tuple[LogFilter, int, KeysetPosition | None]:
        limits = self._limits

        if query.order not in ("asc", "desc"):
            raise InvalidQueryError("order", "must be 'asc' or 'desc'")
        if not isinstance(query.include_states, bool):
            raise InvalidQueryError("include_states", "must be a boolean")

        limit = _as_limit("limit", query.limit, limits.default_page_size, limits.max_page_size)

        date_from = _as_datetime("date_from", query.date_from)
        date_to = _as_datetime("date_to", query.date_to)
        if date_from is not None and date_to is not None:
            _check_range(date_from, date_to, limits.max_date_range_days)

        operation = None
        if query.operation is not None:
            try:
                operation = AuditOperation(query.operation)
            except ValueError as exc:
                raise InvalidQueryError("operation", f"unknown operation {query.operation!r}") from exc

        search = None
        if query.search is not None:
            search = str(query.search).strip()
            if len(search) < limits.min_search_length:
                raise InvalidQueryError(
                    "search", f"must be at least {limits.min_search_length} characters"
                )
            if len(search) > limits.max_search_length:
                raise InvalidQueryError(
                    "search", f"must be at most {limits.max_search_length} characters"
                )

        position = None
        if query.cursor is not None:
            position = decode_cursor(query.cursor, query.order)

        filters = LogFilter(
            table_name=_as_identifier("table_name", query.table_name),
            record_id=_as_identifier("record_id", query.record_id),
            actor_id=_as_uuid("actor_id", query.actor_id),
            operation=operation,
            date_from=date_from,
            date_to=date_to,
            search=search,
        )
        return filters, limit, position

    def query_logs(self, query: AuditLogQuery | Mapping[str, Any]) -> AuditLogPage:
        """
        One page of entries matching ``query``.

        Pages are keyset-paginated on (occurred_at, id); pass the returned
        ``next_cursor`` back with the same filters to continue.

        Raises:
            InvalidQueryError: See module docstring.
        """
        if not isinstance(query, AuditLogQuery):
            query = AuditLogQuery.from_mapping(query)

        filters, limit, position = self._validate_log_query(query)
        descending = query.order == "desc"

        with self._store.session_scope() as session:
            rows = AuditLogSelector(session).search(
                filters, limit=limit + 1, after=position, descending=descending
            )

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = encode_cursor(rows[-1], query.order) if has_more else None
        if not query.include_states:
            rows = [row.without_states() for row in rows]

        logger.debug(
            "audit_logs_queried",
            extra={"returned": len(rows), "has_more": has_more, "order": query.order},
        )
        return AuditLogPage(entries=tuple(rows), next_cursor=next_cursor, has_more=has_more)

    # ------------------------------------------------------------------
    # Record / actor views
    # ------------------------------------------------------------------

    def get_record_history(
        self, table_name: str, record_id: Any, limit: int | None = None
    ) -> tuple[AuditRecord, ...]:
        """
        Entries for one record, oldest first.

        Without ``limit`` every entry is returned, read in batches of
        ``max_history_entries``.  With ``limit`` the newest ``limit`` entries
        are returned, still oldest first.
        """
        table_name = _as_identifier("table_name", table_name)
        record_id = _as_identifier("record_id", record_id)
        if table_name is None or record_id is None:
            raise InvalidQueryError("table_name" if table_name is None else "record_id", "required")
        batch_size = self._limits.max_history_entries

        if limit is None:
            with self._store.session_scope() as session:
                return tuple(
                    AuditLogSelector(session).record_history(table_name, record_id, batch_size)
                )

        limit = _as_limit("limit", limit, batch_size, batch_size)
        with self._store.session_scope() as session:
            return tuple(AuditLogSelector(session).recent_history(table_name, record_id, limit))

    def get_user_activity(
        self,
        actor_id: UUID | str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[AuditRecord, ...]:
        """
        Entries attributed to one actor, newest first.

        Defaults to the last ``default_activity_days`` days.
        """
        limits = self._limits
        actor = _as_uuid("actor_id", actor_id)
        if actor is None:
            raise InvalidQueryError("actor_id", "required")

        until = _as_datetime("until", until) or self._clock.now()
        since = _as_datetime("since", since) or until - timedelta(days=limits.default_activity_days)
        _check_range(since, until, limits.max_activity_window_days, start_field="since")
        limit = _as_limit(
            "limit", limit, limits.default_activity_limit, limits.max_activity_limit
        )

        with self._store.session_scope() as session:
            return tuple(AuditLogSelector(session).actor_activity(actor, since, until, limit))

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_thresholds(thresholds: AnomalyThresholds) -> None:
        for name in ("lookback_days", "scan_limit"):
            value = getattr(thresholds, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidQueryError(name, "must be a positive integer")
        for name in ("max_deletes_per_hour", "max_operations_per_user"):
            value = getattr(thresholds, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidQueryError(name, "must be a non-negative integer")

    @staticmethod
    def _densest_delete_burst(
        times: list[datetime],
    ) -> tuple[int, datetime, datetime]:
        """Largest number of timestamps within any one-hour sliding window."""
        best = (0, times[0], times[0])
        start = 0
        for end, ts in enumerate(times):
            while ts - times[start] >= _DELETE_WINDOW:
                start += 1
            count = end - start + 1
            if count > best[0]:
                best = (count, times[start], ts)
        return best

    def detect_suspicious_activity(
        self, thresholds: AnomalyThresholds | None = None
    ) -> tuple[Anomaly, ...]:
        """
        Threshold-based anomaly scan over the lookback window.

        Rules (one anomaly per actor per rule at most):
            excessive_deletes    -- more than ``max_deletes_per_hour``
                delete/soft-delete entries inside any sliding hour.
            excessive_operations -- more than ``max_operations_per_user``
                entries over the whole lookback.
            suspicious_reason    -- any entry whose reason contains one of
                ``suspicious_patterns`` (case-insensitive).

        Returns:
            Anomalies ordered by rule, then actor id.
        """
        thresholds = thresholds or self._thresholds
        self._validate_thresholds(thresholds)

        window_end = self._clock.now()
        window_start = window_end - timedelta(days=thresholds.lookback_days)

        with self._store.session_scope() as session:
            entries = AuditLogSelector(session).entries_between(
                window_start, window_end, thresholds.scan_limit
            )
        if len(entries) >= thresholds.scan_limit:
            logger.warning(
                "anomaly_scan_truncated",
                extra={
                    "scan_limit": thresholds.scan_limit,
                    "oldest_scanned": entries[0].occurred_at,
                },
            )

        by_actor: dict[UUID | None, list[AuditRecord]] = defaultdict(list)
        for entry in entries:
            by_actor[entry.actor_id].append(entry)

        patterns = tuple(p.lower() for p in thresholds.suspicious_patterns if p)
        anomalies: list[Anomaly] = []

        for actor_id, actor_entries in by_actor.items():
            delete_times = [e.occurred_at for e in actor_entries if e.operation.is_delete]
            if delete_times:
                count, burst_start, burst_end = self._densest_delete_burst(delete_times)
                if count > thresholds.max_deletes_per_hour:
                    anomalies.append(
                        Anomaly(
                            actor_id=actor_id,
                            rule=AnomalyRule.EXCESSIVE_DELETES,
                            observed_count=count,
                            threshold=thresholds.max_deletes_per_hour,
                            window_start=burst_start,
                            window_end=burst_end,
                        )
                    )

            if len(actor_entries) > thresholds.max_operations_per_user:
                anomalies.append(
                    Anomaly(
                        actor_id=actor_id,
                        rule=AnomalyRule.EXCESSIVE_OPERATIONS,
                        observed_count=len(actor_entries),
                        threshold=thresholds.max_operations_per_user,
                        window_start=window_start,
                        window_end=window_end,
                    )
                )

            if patterns:
                flagged = [
                    e for e in actor_entries
                    if e.reason and any(p in e.reason.lower() for p in patterns)
                ]
                if flagged:
                    anomalies.append(
                        Anomaly(
                            actor_id=actor_id,
                            rule=AnomalyRule.SUSPICIOUS_REASON,
                            observed_count=len(flagged),
                            threshold=0,
                            window_start=flagged[0].occurred_at,
                            window_end=flagged[-1].occurred_at,
                        )
                    )

        anomalies.sort(key=lambda a: (a.rule.value, str(a.actor_id)))
        if anomalies:
            logger.warning(
                "suspicious_activity_detected",
                extra={
                    "anomaly_count": len(anomalies),
                    "rules": sorted({a.rule.value for a in anomalies}),
                },
            )
        return tuple(anomalies)

    # ------------------------------------------------------------------
    # Coverage / summaries
    # ------------------------------------------------------------------

    def get_coverage_report(self) -> CoverageReport:
        return self._store.get_coverage_report()

    def get_audit_summary(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> AuditSummary:
        """Totals and breakdowns by operation, table, actor email and UTC day."""
        date_to = _as_datetime("date_to", date_to) or self._clock.now()
        date_from = _as_datetime("date_from", date_from) or date_to - timedelta(days=30)
        _check_range(date_from, date_to, self._limits.max_summary_days)

        filters = LogFilter(date_from=date_from, date_to=date_to)
        with self._store.session_scope() as session:
            selector = AuditLogSelector(session)
            return AuditSummary(
                date_from=date_from,
                date_to=date_to,
                total_operations=selector.count(filters),
                operation_breakdown=selector.count_by_operation(filters),
                table_breakdown=selector.count_by_table_name(filters),
                user_breakdown=selector.count_by_actor_email(filters),
                daily_activity=selector.count_by_utc_day(filters),
            )

    def get_table_stats(self, table_name: str, days_past: int = 30) -> TableStats:
        """Operation breakdown and distinct actors for one table."""
        table_name = _as_identifier("table_name", table_name)
        if table_name is None:
            raise InvalidQueryError("table_name", "required")
        if isinstance(days_past, bool) or not isinstance(days_past, int) or not 1 <= days_past <= 365:
            raise InvalidQueryError("days_past", "must be between 1 and 365")

        date_to = self._clock.now()
        date_from = date_to - timedelta(days=days_past)
        filters = LogFilter(table_name=table_name, date_from=date_from, date_to=date_to)

        with self._store.session_scope() as session:
            selector = AuditLogSelector(session)
            return TableStats(
                table_name=table_name,
                total_operations=selector.count(filters),
                operation_breakdown=selector.count_by_operation(filters),
                unique_actors=selector.count_distinct_actors(filters),
                date_from=date_from,
                date_to=date_to,
            )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def validate_integrity(
        self,
        table_name: str | None = None,
        record_id: Any = None,
        limit: int = 100,
    ) -> IntegrityReport:
        """
        Re-verify the checksums of the most recent entries in scope.

        Mismatches are logged at CRITICAL by the store and reported here by
        id; nothing is corrected.
        """
        table_name = _as_identifier("table_name", table_name)
        record_id = _as_identifier("record_id", record_id)
        limit = _as_limit("limit", limit, 100, self._limits.max_integrity_batch)

        with self._store.session_scope() as session:
            records = AuditLogSelector(session).latest(limit, table_name, record_id)

        invalid = tuple(r.id for r in records if not self._store.verify_integrity(r))
        report = IntegrityReport(checked=len(records), invalid_ids=invalid)
        logger.info(
            "audit_integrity_validated",
            extra={"checked": report.checked, "invalid": len(invalid)},
        )
        return report
