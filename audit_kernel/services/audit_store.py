"""
AuditLogStore -- Append-only persistence of mutation audit entries.

Responsibility:
    Durable append of AuditRecords, integrity re-verification, coverage
    metadata recomputation, and the retention sweep.

Architecture position:
    Kernel > Services -- imperative shell.  The only writer of
    ``audit_entries`` and the sole owner of ``audit_coverage``.

Invariants enforced:
    - Each append runs in its own transaction, decoupled from the business
      transaction that produced the mutation.  Either the whole row is
      committed or nothing is.
    - Append-only: entries are never updated.  ``purge_older_than`` is the
      one sanctioned deletion, authorized per transaction.
    - Integrity: ``verify_integrity`` recomputes the checksum over the
      canonical content and never auto-corrects.

Failure modes:
    - StoreWriteError: any database failure during append (rolled back).
    - IntegrityMismatchError: from ``assert_integrity`` on checksum mismatch.
    - InvalidQueryError: coverage window with start >= end.

Audit relevance:
    This IS the audit store.  Everything the query service reads was written
    through ``append``.
"""

from collections.abc import Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Generator
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from audit_kernel.db.immutability import PURGE_EXECUTION_OPTION
from audit_kernel.db.triggers import allow_purge_in_transaction
from audit_kernel.domain.clock import Clock, SystemClock
from audit_kernel.domain.dtos import AuditRecord, CoverageReport, TableCoverage, utc
from audit_kernel.exceptions import (
    IntegrityMismatchError,
    InvalidQueryError,
    StoreWriteError,
)
from audit_kernel.logging_config import get_logger
from audit_kernel.models.audit_entry import AuditEntry
from audit_kernel.models.coverage import CoverageMetadata
from audit_kernel.selectors.audit_log_selector import AuditLogSelector
from audit_kernel.utils.hashing import compute_entry_checksum

logger = get_logger("services.audit_store")


def coverage_percentage(audited: int, observed: int | None) -> float | None:
    """
    audited / observed x 100, capped at 100 and rounded to 2 decimal places.

    No observed count yields None.  Zero observed yields 100 (nothing was
    missed).
    """
    if observed is None:
        return None
    if observed <= 0:
        return 100.0
    return round(min(100.0, audited * 100.0 / observed), 2)


class AuditLogStore:
    """
    Append-only audit log store.

    Contract:
        Implements the ``AuditSink`` protocol (``append``) and the read scope
        used by AuditQueryService.  Every public method opens and closes its
        own session from the injected factory.

    Guarantees:
        - ``append`` commits exactly one row or raises StoreWriteError.
        - ``compute_coverage`` replaces ``audit_coverage`` wholesale.

    Non-goals:
        - Does NOT build records or compute checksums for new entries; the
          entry builder does.
        - Does NOT swallow errors; the middleware decides what is fatal.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
    ):
        """
        Args:
            session_factory: Factory for per-call sessions.  Defaults to the
                module-level factory from ``audit_kernel.db.engine``.
            clock: Clock for coverage timestamps. Defaults to SystemClock.
        """
        if session_factory is None:
            from audit_kernel.db.engine import get_session_factory

            session_factory = get_session_factory()
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Transactional scope: commit on success, roll back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(self, record: AuditRecord) -> UUID:
        """
        Persist one audit record in its own transaction.

        Returns:
            The entry id.

        Raises:
            StoreWriteError: If the row could not be committed.
        """
        entry = AuditEntry(
            id=record.id,
            table_name=record.table_name,
            record_id=record.record_id,
            operation=record.operation.value,
            before_state=record.before_state,
            after_state=record.after_state,
            diff=[change.to_dict() for change in record.diff],
            checksum=record.checksum,
            actor_id=record.actor_id,
            actor_email_backup=record.actor_email_backup,
            occurred_at=record.occurred_at,
            ip_address=record.ip_address,
            session_id=record.session_id,
            user_agent=record.user_agent,
            reason=record.reason,
            audit_version=record.audit_version,
        )

        try:
            with self.session_scope() as session:
                session.add(entry)
        except SQLAlchemyError as exc:
            raise StoreWriteError(
                table_name=record.table_name,
                record_id=record.record_id,
                reason=str(exc.orig if getattr(exc, "orig", None) is not None else exc),
            ) from exc

        logger.info(
            "audit_entry_appended",
            extra={
                "entry_id": str(record.id),
                "table_name": record.table_name,
                "record_id": record.record_id,
                "operation": record.operation.value,
                "diff_fields": len(record.diff),
            },
        )
        return record.id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entry_id: UUID) -> AuditRecord | None:
        """Get one entry by id, or None."""
        with self.session_scope() as session:
            return AuditLogSelector(session).get(entry_id)

    def get_coverage_report(self) -> CoverageReport:
        """The last persisted coverage report (empty if never computed)."""
        with self.session_scope() as session:
            return AuditLogSelector(session).coverage_report()

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    @staticmethod
    def _recompute(record: AuditRecord) -> str:
        return compute_entry_checksum(record.canonical_content())

    def verify_integrity(self, record: AuditRecord) -> bool:
        """
        Recompute the checksum over the record's canonical content.

        Returns:
            True if it matches the stored checksum.  False indicates
            tampering or corruption; the mismatch is logged at CRITICAL.
        """
        actual = self._recompute(record)
        if actual == record.checksum:
            return True

        logger.critical(
            "audit_integrity_mismatch",
            extra={
                "entry_id": str(record.id),
                "table_name": record.table_name,
                "record_id": record.record_id,
                "expected_checksum": record.checksum,
                "actual_checksum": actual,
            },
        )
        return False

    def assert_integrity(self, record: AuditRecord) -> None:
        """
        Raise IntegrityMismatchError if the record fails verification.

        Never auto-corrects.
        """
        if not self.verify_integrity(record):
            raise IntegrityMismatchError(
                entry_id=str(record.id),
                expected_checksum=record.checksum,
                actual_checksum=self._recompute(record),
            )

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def compute_coverage(
        self,
        window_start: datetime,
        window_end: datetime,
        attempted: Mapping[str, int] | None = None,
    ) -> CoverageReport:
        """
        Recompute per-table coverage for [window_start, window_end).

        Args:
            window_start: Inclusive lower bound on occurred_at.
            window_end: Exclusive upper bound on occurred_at.
            attempted: Table name -> mutations attempted in the window, from
                an external count (e.g. ``AuditMetrics.observed_by_table()``).

        Raises:
            InvalidQueryError: If window_start >= window_end or a count is
                negative.
        """
        window_start, window_end = utc(window_start), utc(window_end)
        if window_start >= window_end:
            raise InvalidQueryError("window_start", "must be before window_end")

        attempted = dict(attempted or {})
        for table_name, count in attempted.items():
            if count < 0:
                raise InvalidQueryError("attempted", f"negative count for {table_name}")

        computed_at = self._clock.now()

        with self.session_scope() as session:
            audited = AuditLogSelector(session).count_by_table(window_start, window_end)

            tables = tuple(
                TableCoverage(
                    table_name=name,
                    mutations_observed=attempted.get(name),
                    mutations_audited=audited.get(name, 0),
                    coverage_pct=coverage_percentage(
                        audited.get(name, 0), attempted.get(name)
                    ),
                )
                for name in sorted(set(audited) | set(attempted))
            )

            session.execute(delete(CoverageMetadata))
            session.add_all(
                CoverageMetadata(
                    table_name=t.table_name,
                    window_start=window_start,
                    window_end=window_end,
                    mutations_observed=t.mutations_observed,
                    mutations_audited=t.mutations_audited,
                    coverage_pct=t.coverage_pct,
                    computed_at=computed_at,
                )
                for t in tables
            )

        report = CoverageReport(
            window_start=window_start,
            window_end=window_end,
            computed_at=computed_at,
            tables=tables,
        )
        logger.info(
            "audit_coverage_computed",
            extra={
                "window_start": window_start,
                "window_end": window_end,
                "table_count": len(tables),
                "total_audited": report.total_audited,
            },
        )
        return report

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_older_than(self, cutoff: datetime) -> int:
        """
        Delete entries with occurred_at < cutoff.  Returns the number removed.

        The one sanctioned mutation of the append-only log.  Out-of-band
        only (scheduled job / operator CLI); never call from request-path
        code.
        """
        cutoff = utc(cutoff)
        with self.session_scope() as session:
            allow_purge_in_transaction(session.connection())
            result = session.execute(
                delete(AuditEntry).where(AuditEntry.occurred_at < cutoff),
                execution_options={
                    PURGE_EXECUTION_OPTION: True,
                    "synchronize_session": False,
                },
            )
            removed = result.rowcount or 0

        logger.warning(
            "audit_entries_purged",
            extra={"cutoff": cutoff, "removed": removed},
        )
        return removed
