"""Read-only query selectors for the audit kernel."""

from audit_kernel.selectors.audit_log_selector import (
    AuditLogSelector,
    KeysetPosition,
    LogFilter,
    entry_to_record,
)
from audit_kernel.selectors.base import BaseSelector

__all__ = [
    "AuditLogSelector",
    "BaseSelector",
    "KeysetPosition",
    "LogFilter",
    "entry_to_record",
]
