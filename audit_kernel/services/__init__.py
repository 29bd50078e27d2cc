"""Services for the audit kernel (write and read side)."""

from audit_kernel.services.audit_context import bind_audit_context, current_audit_context
from audit_kernel.services.audit_middleware import AuditSink, MutationAuditor, MutationSpec
from audit_kernel.services.audit_query_service import AuditLogQuery, AuditQueryService
from audit_kernel.services.audit_store import AuditLogStore

__all__ = [
    "AuditLogQuery",
    "AuditLogStore",
    "AuditQueryService",
    "AuditSink",
    "MutationAuditor",
    "MutationSpec",
    "bind_audit_context",
    "current_audit_context",
]
