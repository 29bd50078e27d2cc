"""
Ambient audit context.

The host application binds the authenticated actor and request information
once per request; the mutation auditor reads it at call time.  Backed by a
ContextVar, so it is isolated per thread and per asyncio task.

Usage:
    with bind_audit_context(AuditContext(actor_id=user.id, actor_email=user.email)):
        vendors.update(...)
"""

from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar

from audit_kernel.domain.dtos import AuditContext
from audit_kernel.logging_config import LogContext

_current: ContextVar[AuditContext | None] = ContextVar("audit_context", default=None)


def current_audit_context() -> AuditContext | None:
    """The context bound for the running request, or None."""
    return _current.get()


@contextmanager
def bind_audit_context(context: AuditContext) -> Generator[AuditContext, None, None]:
    """Bind ``context`` (and its log fields) for the duration of the block."""
    token = _current.set(context)
    try:
        with LogContext.bind(actor_id=str(context.actor_id), session_id=context.session_id):
            yield context
    finally:
        _current.reset(token)
