"""
Module: audit_kernel.models.coverage
Responsibility: ORM persistence for audit coverage metadata.
Architecture position: Kernel > Models.  May import from db/ only.

CoverageMetadata is aggregate, not evidence: one row per table per
recomputation, owned by AuditLogStore and rewritten wholesale (delete all,
insert fresh) each time compute_coverage runs.  It is NOT append-only.
"""

from datetime import datetime

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from audit_kernel.db.base import Base, UTCDateTime


class CoverageMetadata(Base):
    """Audited-vs-observed mutation counts for one table over one window."""

    __tablename__ = "audit_coverage"

    table_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    window_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    window_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # None when the caller supplied no attempted count for this table
    mutations_observed: Mapped[int | None] = mapped_column(Integer, nullable=True)

    mutations_audited: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    coverage_pct: Mapped[float | None] = mapped_column(Float, nullable=True)

    computed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<CoverageMetadata {self.table_name} {self.coverage_pct}%>"
