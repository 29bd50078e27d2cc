"""
Config -> Kernel Bridges.

Functions that turn an AuditConfig into wired kernel objects.  These live in
audit_config (the producer) because the kernel must NEVER import
audit_config.

Usage:
    from audit_config import get_active_config
    from audit_config.bridges import build_auditor, build_query_service, build_store

    config = get_active_config()
    store = build_store(config)
    auditor = build_auditor(config, store)
    queries = build_query_service(config, store)
"""

from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from audit_config.schema import AuditConfig
from audit_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from audit_kernel.db.immutability import register_immutability_listeners
from audit_kernel.domain.clock import Clock
from audit_kernel.observability import AlertHandler, AuditMetrics
from audit_kernel.services.audit_middleware import AuditSink, MutationAuditor
from audit_kernel.services.audit_query_service import AuditQueryService
from audit_kernel.services.audit_store import AuditLogStore


def init_database(config: AuditConfig, create: bool = True) -> Engine:
    """Initialize the module-level engine from ``config.database``.

    With ``create`` (the default) the schema and, if configured, the
    append-only triggers are created.  ORM immutability listeners are
    always registered.
    """
    db = config.database
    engine = init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
    )
    register_immutability_listeners()
    if create:
        create_tables(engine, install_triggers=db.install_triggers)
    return engine


def build_store(
    config: AuditConfig,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
) -> AuditLogStore:
    """Store over ``session_factory``.

    Without one, the store uses the module-level factory, initializing the
    engine from ``config.database`` first if nothing has done so yet.
    """
    if session_factory is None:
        try:
            session_factory = get_session_factory()
        except RuntimeError:
            init_database(config)
            session_factory = get_session_factory()
    return AuditLogStore(session_factory=session_factory, clock=clock)


def build_auditor(
    config: AuditConfig,
    store: AuditSink,
    metrics: AuditMetrics | None = None,
    clock: Clock | None = None,
    alert_handler: AlertHandler | None = None,
) -> MutationAuditor:
    """MutationAuditor with the configured redaction, limits and failure policy."""
    return MutationAuditor(
        store,
        clock=clock,
        redaction=config.redaction,
        snapshot_limits=config.snapshot,
        settings=config.middleware,
        failure_policy=config.failure_policy,
        metrics=metrics,
        alert_handler=alert_handler,
    )


def build_query_service(
    config: AuditConfig,
    store: AuditLogStore,
    clock: Clock | None = None,
) -> AuditQueryService:
    """AuditQueryService with the configured query limits and anomaly thresholds."""
    return AuditQueryService(
        store,
        clock=clock,
        limits=config.query,
        thresholds=config.anomaly,
    )
