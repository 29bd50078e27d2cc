"""
audit_config -- single public entrypoint for audit configuration.

Responsibility:
    Provides the one way to obtain configuration at runtime through
    ``get_active_config()``.  Kernel services receive policy objects from
    here; they never read files or environment variables themselves.

Architecture position:
    Configuration -- YAML-driven settings.  This package sits above
    ``audit_kernel``.  The kernel MUST NEVER import from ``audit_config``;
    ``audit_config.bridges`` wires kernel services from a configuration.

Resolution order:
    1. ``AUDIT_CONFIG_PATH`` names a YAML file, else the packaged
       ``defaults.yaml`` is used.
    2. ``AUDIT_DATABASE_URL``, when set, replaces ``database.url``.

Failure modes:
    - ``FileNotFoundError`` -- ``AUDIT_CONFIG_PATH`` points at a missing file.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.

Audit relevance:
    Every resolution emits an ``audit_config_loaded`` log entry carrying the
    config_id, source and checksum, tying the audit log's behavior to the
    exact configuration that governed it.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

from audit_config.bridges import (
    build_auditor,
    build_query_service,
    build_store,
    init_database,
)
from audit_config.loader import DEFAULT_CONFIG_PATH, load_config, load_default_config
from audit_config.schema import AuditConfig, DatabaseConfig
from audit_kernel.logging_config import get_logger

CONFIG_PATH_ENV = "AUDIT_CONFIG_PATH"
DATABASE_URL_ENV = "AUDIT_DATABASE_URL"

_logger = get_logger("config")

_active: AuditConfig | None = None


def get_active_config() -> AuditConfig:
    """The process-wide configuration, resolved once and cached.

    Call ``reset_active_config()`` to force re-resolution (tests, reloads).
    """
    global _active
    if _active is not None:
        return _active

    path = os.environ.get(CONFIG_PATH_ENV)
    config = load_config(Path(path)) if path else load_default_config()

    url_override = os.environ.get(DATABASE_URL_ENV)
    if url_override:
        config = replace(config, database=replace(config.database, url=url_override))

    _logger.info(
        "audit_config_loaded",
        extra={
            "config_id": config.config_id,
            "source": config.source,
            "checksum": config.checksum,
            "database_url_overridden": bool(url_override),
        },
    )
    _active = config
    return config


def reset_active_config() -> None:
    global _active
    _active = None


__all__ = [
    "AuditConfig",
    "CONFIG_PATH_ENV",
    "DATABASE_URL_ENV",
    "DEFAULT_CONFIG_PATH",
    "DatabaseConfig",
    "build_auditor",
    "build_query_service",
    "build_store",
    "get_active_config",
    "init_database",
    "load_config",
    "load_default_config",
    "reset_active_config",
]
