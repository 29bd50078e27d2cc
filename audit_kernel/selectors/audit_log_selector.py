"""
Module: audit_kernel.selectors.audit_log_selector
Responsibility: Read-only query access to audit entries and coverage rows.
    Converts ORM models to frozen AuditRecord DTOs for clean layer separation.
Architecture position: Kernel > Selectors.  May import from models/,
    selectors/base.py and domain DTOs.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: No mutations performed on any queried data.
    - DTO convention: public methods return AuditRecord / TableCoverage /
      plain counts, never raw ORM models.
    - Deterministic ordering: every multi-row result is ordered by
      (occurred_at, id), ascending or descending.

Failure modes:
    - Returns None or an empty sequence when nothing matches (never raises on
      absence of data).  Filter validation is the query service's job; this
      selector trusts its inputs.
"""

from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import Select, Text, and_, cast, func, or_, select

from audit_kernel.domain.dtos import (
    AuditOperation,
    AuditRecord,
    CoverageReport,
    FieldChange,
    TableCoverage,
)
from audit_kernel.models.audit_entry import AuditEntry
from audit_kernel.models.coverage import CoverageMetadata
from audit_kernel.selectors.base import BaseSelector


def entry_to_record(entry: AuditEntry) -> AuditRecord:
    """Convert an AuditEntry row to its AuditRecord DTO."""
    return AuditRecord(
        id=entry.id,
        table_name=entry.table_name,
        record_id=entry.record_id,
        operation=AuditOperation(entry.operation),
        before_state=entry.before_state,
        after_state=entry.after_state,
        diff=tuple(FieldChange.from_dict(change) for change in entry.diff or ()),
        checksum=entry.checksum,
        actor_id=entry.actor_id,
        actor_email_backup=entry.actor_email_backup,
        occurred_at=entry.occurred_at,
        ip_address=entry.ip_address,
        session_id=entry.session_id,
        user_agent=entry.user_agent,
        reason=entry.reason,
        audit_version=entry.audit_version,
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class LogFilter:
    """Validated filter for log searches (built by the query service)."""

    table_name: str | None = None
    record_id: str | None = None
    actor_id: UUID | None = None
    operation: AuditOperation | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class KeysetPosition:
    """The (occurred_at, id) of the last row on the previous page."""

    occurred_at: datetime
    entry_id: UUID


class AuditLogSelector(BaseSelector[AuditEntry]):
    """
    Selector for audit log queries.

    Guarantees:
        - Read-only: No mutations are performed.
        - Ordering: results are ordered by (occurred_at, id).
    """

    # ------------------------------------------------------------------
    # Single entry
    # ------------------------------------------------------------------

    def get(self, entry_id: UUID) -> AuditRecord | None:
        """Get one entry by id, or None."""
        entry = self.session.get(AuditEntry, entry_id)
        if entry is None:
            return None
        return entry_to_record(entry)

    # ------------------------------------------------------------------
    # Filtered search with keyset pagination
    # ------------------------------------------------------------------

    def _apply_filter(self, stmt: Select, filters: LogFilter) -> Select:
        if filters.table_name is not None:
            stmt = stmt.where(AuditEntry.table_name == filters.table_name)
        if filters.record_id is not None:
            stmt = stmt.where(AuditEntry.record_id == filters.record_id)
        if filters.actor_id is not None:
            stmt = stmt.where(AuditEntry.actor_id == filters.actor_id)
        if filters.operation is not None:
            stmt = stmt.where(AuditEntry.operation == filters.operation.value)
        if filters.date_from is not None:
            stmt = stmt.where(AuditEntry.occurred_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(AuditEntry.occurred_at <= filters.date_to)
        if filters.search:
            pattern = f"%{_escape_like(filters.search)}%"
            stmt = stmt.where(
                or_(
                    AuditEntry.table_name.ilike(pattern, escape="\\"),
                    AuditEntry.record_id.ilike(pattern, escape="\\"),
                    AuditEntry.actor_email_backup.ilike(pattern, escape="\\"),
                    AuditEntry.reason.ilike(pattern, escape="\\"),
                    cast(AuditEntry.before_state, Text).ilike(pattern, escape="\\"),
                    cast(AuditEntry.after_state, Text).ilike(pattern, escape="\\"),
                )
            )
        return stmt

    def search(
        self,
        filters: LogFilter,
        *,
        limit: int,
        after: KeysetPosition | None = None,
        descending: bool = True,
    ) -> list[AuditRecord]:
        """
        Filtered entries in (occurred_at, id) order, starting after ``after``.

        Returns at most ``limit`` records; callers ask for one extra row to
        learn whether another page exists.
        """
        stmt = self._apply_filter(select(AuditEntry), filters)

        if after is not None:
            if descending:
                stmt = stmt.where(
                    or_(
                        AuditEntry.occurred_at < after.occurred_at,
                        and_(
                            AuditEntry.occurred_at == after.occurred_at,
                            AuditEntry.id < after.entry_id,
                        ),
                    )
                )
            else:
                stmt = stmt.where(
                    or_(
                        AuditEntry.occurred_at > after.occurred_at,
                        and_(
                            AuditEntry.occurred_at == after.occurred_at,
                            AuditEntry.id > after.entry_id,
                        ),
                    )
                )

        if descending:
            stmt = stmt.order_by(AuditEntry.occurred_at.desc(), AuditEntry.id.desc())
        else:
            stmt = stmt.order_by(AuditEntry.occurred_at.asc(), AuditEntry.id.asc())

        entries = self.session.execute(stmt.limit(limit)).scalars().all()
        return [entry_to_record(e) for e in entries]

    # ------------------------------------------------------------------
    # Record / actor views
    # ------------------------------------------------------------------

    def record_history(
        self, table_name: str, record_id: str, batch_size: int
    ) -> list[AuditRecord]:
        """All entries for one record, oldest first, read in keyset batches."""
        filters = LogFilter(table_name=table_name, record_id=record_id)
        history: list[AuditRecord] = []
        after: KeysetPosition | None = None
        while True:
            batch = self.search(filters, limit=batch_size, after=after, descending=False)
            history.extend(batch)
            if len(batch) < batch_size:
                return history
            after = KeysetPosition(occurred_at=batch[-1].occurred_at, entry_id=batch[-1].id)

    def recent_history(
        self, table_name: str, record_id: str, limit: int
    ) -> list[AuditRecord]:
        """The newest ``limit`` entries for one record, oldest first."""
        newest = self.latest(limit, table_name=table_name, record_id=record_id)
        return newest[::-1]

    def actor_activity(
        self, actor_id: UUID, since: datetime, until: datetime, limit: int
    ) -> list[AuditRecord]:
        """Entries attributed to one actor within [since, until], newest first."""
        return self.search(
            LogFilter(actor_id=actor_id, date_from=since, date_to=until),
            limit=limit,
            descending=True,
        )

    def entries_between(
        self, since: datetime, until: datetime, limit: int
    ) -> list[AuditRecord]:
        """The newest ``limit`` entries within [since, until], oldest first (anomaly scans)."""
        newest = self.search(
            LogFilter(date_from=since, date_to=until),
            limit=limit,
            descending=True,
        )
        return newest[::-1]

    def latest(
        self,
        limit: int,
        table_name: str | None = None,
        record_id: str | None = None,
    ) -> list[AuditRecord]:
        """Most recent entries, optionally scoped to a table or record."""
        return self.search(
            LogFilter(table_name=table_name, record_id=record_id),
            limit=limit,
            descending=True,
        )

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _grouped_counts(self, column, filters: LogFilter) -> dict[str, int]:
        stmt = self._apply_filter(
            select(column, func.count(AuditEntry.id)).group_by(column),
            filters,
        )
        return {
            (key if key is not None else "unknown"): count
            for key, count in self.session.execute(stmt)
        }

    def count_by_table(self, window_start: datetime, window_end: datetime) -> dict[str, int]:
        """Entries per table with window_start <= occurred_at < window_end."""
        stmt = (
            select(AuditEntry.table_name, func.count(AuditEntry.id))
            .where(
                AuditEntry.occurred_at >= window_start,
                AuditEntry.occurred_at < window_end,
            )
            .group_by(AuditEntry.table_name)
        )
        return {name: count for name, count in self.session.execute(stmt)}

    def count(self, filters: LogFilter) -> int:
        stmt = self._apply_filter(select(func.count(AuditEntry.id)), filters)
        return self.session.execute(stmt).scalar_one()

    def count_by_operation(self, filters: LogFilter) -> dict[str, int]:
        return self._grouped_counts(AuditEntry.operation, filters)

    def count_by_table_name(self, filters: LogFilter) -> dict[str, int]:
        return self._grouped_counts(AuditEntry.table_name, filters)

    def count_by_actor_email(self, filters: LogFilter) -> dict[str, int]:
        return self._grouped_counts(AuditEntry.actor_email_backup, filters)

    def count_distinct_actors(self, filters: LogFilter) -> int:
        stmt = self._apply_filter(
            select(func.count(func.distinct(AuditEntry.actor_id))), filters
        )
        return self.session.execute(stmt).scalar_one()

    def _occurred_at_values(self, filters: LogFilter) -> Iterator[datetime]:
        stmt = self._apply_filter(select(AuditEntry.occurred_at), filters)
        yield from self.session.execute(stmt).scalars()

    def count_by_utc_day(self, filters: LogFilter) -> dict[str, int]:
        """
        Entries per UTC calendar day, keyed "YYYY-MM-DD", sorted by day.

        Bucketed in Python: SQL date functions disagree across dialects on
        which timezone they truncate in.
        """
        days = Counter(ts.date().isoformat() for ts in self._occurred_at_values(filters))
        return dict(sorted(days.items()))

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def coverage_report(self) -> CoverageReport:
        """The last persisted coverage computation (empty if never run)."""
        rows = self.session.execute(
            select(CoverageMetadata).order_by(CoverageMetadata.table_name)
        ).scalars().all()

        if not rows:
            return CoverageReport(window_start=None, window_end=None, computed_at=None)

        first = rows[0]
        return CoverageReport(
            window_start=first.window_start,
            window_end=first.window_end,
            computed_at=first.computed_at,
            tables=tuple(
                TableCoverage(
                    table_name=row.table_name,
                    mutations_observed=row.mutations_observed,
                    mutations_audited=row.mutations_audited,
                    coverage_pct=row.coverage_pct,
                )
                for row in rows
            ),
        )
