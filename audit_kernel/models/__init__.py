"""ORM models for the audit kernel."""

from audit_kernel.models.audit_entry import AuditEntry
from audit_kernel.models.coverage import CoverageMetadata

__all__ = [
    "AuditEntry",
    "CoverageMetadata",
]
