"""
AuditConfig schema.

Defines the typed form of an audit configuration file.  YAML is parsed into
these types by the loader; bridges turn them into kernel services.

Kernel policy objects (RedactionPolicy, QueryLimits, ...) are reused as the
section types so that a parsed configuration is directly consumable by the
kernel without a second translation step.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from audit_kernel.domain.policies import (
    AnomalyThresholds,
    FailurePolicy,
    MiddlewareSettings,
    QueryLimits,
    RedactionPolicy,
    SnapshotLimits,
)


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the audit store."""

    url: str
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    install_triggers: bool = True


@dataclass(frozen=True)
class AuditConfig:
    """
    A complete, validated audit configuration.

    ``checksum`` is the SHA-256 of the parsed source document and changes
    whenever any setting changes.
    """

    config_id: str
    database: DatabaseConfig
    redaction: RedactionPolicy = field(default_factory=RedactionPolicy)
    snapshot: SnapshotLimits = field(default_factory=SnapshotLimits)
    query: QueryLimits = field(default_factory=QueryLimits)
    anomaly: AnomalyThresholds = field(default_factory=AnomalyThresholds)
    failure_policy: FailurePolicy = field(default_factory=FailurePolicy)
    middleware: MiddlewareSettings = field(default_factory=MiddlewareSettings)
    source: str | None = None
    checksum: str = ""
