"""
Configuration Loader (``audit_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the typed
``audit_config.schema.AuditConfig``.  Runtime callers should use
``audit_config.get_active_config()``; the functions here are the parsing
layer underneath it and are exposed for tests and tooling.

Invariants enforced
-------------------
* Unknown keys raise ``ValueError``; a misspelt setting never silently
  falls back to its default.
* Required keys (``config_id``, ``database.url``) raise ``KeyError`` when
  absent.
* Every parsed object is a frozen dataclass.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong value types / out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from audit_config.schema import AuditConfig, DatabaseConfig
from audit_kernel.domain.policies import (
    AnomalyThresholds,
    FailureMode,
    FailurePolicy,
    MiddlewareSettings,
    QueryLimits,
    RedactionPolicy,
    SnapshotLimits,
)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

_TOP_LEVEL_KEYS = frozenset({
    "config_id",
    "database",
    "redaction",
    "snapshot",
    "query",
    "anomaly",
    "failure_policy",
    "middleware",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML document must be a mapping")
    return data


def _section(data: dict[str, Any], name: str, allowed: set[str] | frozenset[str]) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping, got {type(section).__name__}")
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown key(s) in '{name}': {', '.join(unknown)}")
    return section


def _int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    return value


def _bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{section}.{key} must be true or false, got {value!r}")
    return value


def _str_list(section: str, key: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{section}.{key} must be a list of strings")
    return tuple(value)


def _int_fields(section: str, data: dict[str, Any]) -> dict[str, int]:
    return {key: _int(section, key, value) for key, value in data.items()}


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse the ``database`` section.  ``url`` is required."""
    section = _section(
        data,
        "database",
        {"url", "echo", "pool_size", "max_overflow", "pool_timeout", "install_triggers"},
    )
    url = section["url"]
    if not isinstance(url, str) or not url:
        raise ValueError("database.url must be a non-empty string")
    return DatabaseConfig(
        url=url,
        echo=_bool("database", "echo", section.get("echo", False)),
        pool_size=_int("database", "pool_size", section.get("pool_size", 10)),
        max_overflow=_int("database", "max_overflow", section.get("max_overflow", 20)),
        pool_timeout=_int("database", "pool_timeout", section.get("pool_timeout", 30)),
        install_triggers=_bool(
            "database", "install_triggers", section.get("install_triggers", True)
        ),
    )


def parse_redaction(data: dict[str, Any]) -> RedactionPolicy:
    section = _section(data, "redaction", {"sensitive_fields", "marker"})
    kwargs: dict[str, Any] = {}
    if "sensitive_fields" in section:
        kwargs["sensitive_fields"] = frozenset(
            _str_list("redaction", "sensitive_fields", section["sensitive_fields"])
        )
    if "marker" in section:
        if not isinstance(section["marker"], str):
            raise ValueError("redaction.marker must be a string")
        kwargs["marker"] = section["marker"]
    return RedactionPolicy(**kwargs)


def parse_snapshot(data: dict[str, Any]) -> SnapshotLimits:
    section = _section(data, "snapshot", {"max_depth"})
    return SnapshotLimits(**_int_fields("snapshot", section))


def parse_query(data: dict[str, Any]) -> QueryLimits:
    allowed = frozenset(QueryLimits.__dataclass_fields__)
    section = _section(data, "query", allowed)
    return QueryLimits(**_int_fields("query", section))


def parse_anomaly(data: dict[str, Any]) -> AnomalyThresholds:
    """
    Parse the ``anomaly`` section.

    Thresholds of 0 are allowed (flag any occurrence); lookback and scan
    limit must be positive.
    """
    section = _section(data, "anomaly", frozenset(AnomalyThresholds.__dataclass_fields__))
    kwargs: dict[str, Any] = {}
    for key, value in section.items():
        if key == "suspicious_patterns":
            kwargs[key] = _str_list("anomaly", key, value)
            continue
        number = _int("anomaly", key, value)
        minimum = 1 if key in ("lookback_days", "scan_limit") else 0
        if number < minimum:
            raise ValueError(f"anomaly.{key} must be >= {minimum}, got {number}")
        kwargs[key] = number
    return AnomalyThresholds(**kwargs)


def parse_failure_policy(data: dict[str, Any]) -> FailurePolicy:
    section = _section(
        data, "failure_policy", {"mode", "alert_threshold", "append_timeout_seconds"}
    )
    kwargs: dict[str, Any] = {}
    if "mode" in section:
        try:
            kwargs["mode"] = FailureMode(section["mode"])
        except ValueError as exc:
            choices = ", ".join(m.value for m in FailureMode)
            raise ValueError(
                f"failure_policy.mode must be one of {choices}, got {section['mode']!r}"
            ) from exc
    if "alert_threshold" in section:
        kwargs["alert_threshold"] = _int(
            "failure_policy", "alert_threshold", section["alert_threshold"]
        )
    if "append_timeout_seconds" in section:
        timeout = section["append_timeout_seconds"]
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ValueError("failure_policy.append_timeout_seconds must be a number")
        kwargs["append_timeout_seconds"] = float(timeout)
    return FailurePolicy(**kwargs)


def parse_middleware(data: dict[str, Any]) -> MiddlewareSettings:
    section = _section(
        data,
        "middleware",
        {"enabled", "excluded_tables", "excluded_operations", "include_request_info"},
    )
    kwargs: dict[str, Any] = {}
    for key in ("enabled", "include_request_info"):
        if key in section:
            kwargs[key] = _bool("middleware", key, section[key])
    for key in ("excluded_tables", "excluded_operations"):
        if key in section:
            kwargs[key] = frozenset(_str_list("middleware", key, section[key]))
    return MiddlewareSettings(**kwargs)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Postconditions:
        - Identical ``data`` always produces identical checksums
          (deterministic).
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any], source: str | None = None) -> AuditConfig:
    """
    Parse a full configuration document.

    Raises:
        KeyError: if ``config_id`` or ``database.url`` is missing.
        ValueError: on unknown keys or invalid values.
    """
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ValueError(f"Unknown top-level key(s): {', '.join(unknown)}")

    return AuditConfig(
        config_id=str(data["config_id"]),
        database=parse_database(data),
        redaction=parse_redaction(data),
        snapshot=parse_snapshot(data),
        query=parse_query(data),
        anomaly=parse_anomaly(data),
        failure_policy=parse_failure_policy(data),
        middleware=parse_middleware(data),
        source=source,
        checksum=compute_checksum(data),
    )


def load_config(path: Path | str) -> AuditConfig:
    """Load and parse one configuration file."""
    path = Path(path)
    return parse_config(load_yaml_file(path), source=str(path))


def load_default_config() -> AuditConfig:
    """The configuration shipped with the package."""
    return load_config(DEFAULT_CONFIG_PATH)
