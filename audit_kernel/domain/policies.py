"""
Policies -- Tunable knobs of the audit pipeline as frozen value objects.

Responsibility:
    Declares the redaction, snapshot, query, anomaly, failure and middleware
    policies consumed by kernel services.  ``audit_config`` parses YAML into
    these types; kernel code never reads configuration files itself.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Failure modes:
    - ValueError on construction with non-positive limits or an unknown
      failure mode.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_SENSITIVE_FIELDS: frozenset[str] = frozenset({
    "password",
    "passwordHash",
    "password_hash",
    "token",
    "secret",
    "apiKey",
    "api_key",
    "privateKey",
    "private_key",
    "accessToken",
    "refreshToken",
})

REDACTION_MARKER = "[REDACTED]"


def normalize_field_name(name: str) -> str:
    """Case-, underscore- and hyphen-insensitive key used for redaction matching."""
    return name.replace("_", "").replace("-", "").lower()


@dataclass(frozen=True)
class RedactionPolicy:
    """Field names whose values never reach storage."""

    sensitive_fields: frozenset[str] = DEFAULT_SENSITIVE_FIELDS
    marker: str = REDACTION_MARKER

    @property
    def normalized_fields(self) -> frozenset[str]:
        return frozenset(normalize_field_name(f) for f in self.sensitive_fields)

    def is_sensitive(self, name: str) -> bool:
        return normalize_field_name(name) in self.normalized_fields


@dataclass(frozen=True)
class SnapshotLimits:
    max_depth: int = 32

    def __post_init__(self) -> None:
        if self.max_depth < 1:
            raise ValueError(f"max_depth must be positive, got {self.max_depth}")


@dataclass(frozen=True)
class QueryLimits:
    """Bounds enforced by the query service before touching storage."""

    default_page_size: int = 50
    max_page_size: int = 500
    max_date_range_days: int = 365
    max_history_entries: int = 500
    default_activity_limit: int = 50
    max_activity_limit: int = 200
    default_activity_days: int = 7
    max_activity_window_days: int = 90
    min_search_length: int = 2
    max_search_length: int = 200
    max_summary_days: int = 90
    max_integrity_batch: int = 1000

    def __post_init__(self) -> None:
        for name, value in vars(self).items():
            if value < 1:
                raise ValueError(f"QueryLimits.{name} must be positive, got {value}")
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")


@dataclass(frozen=True)
class AnomalyThresholds:
    """Deterministic threshold classifier settings for suspicious activity."""

    lookback_days: int = 7
    max_deletes_per_hour: int = 10
    max_operations_per_user: int = 100
    suspicious_patterns: tuple[str, ...] = ("bulk", "admin", "override", "bypass")
    scan_limit: int = 5000


class FailureMode(str, Enum):
    LOG = "log"
    ALERT = "alert"


@dataclass(frozen=True)
class FailurePolicy:
    """
    What happens when an audit write fails on the request path.

    ``log`` records the failure (structured log + counters) and leaves
    detection to coverage reports.  ``alert`` additionally invokes the
    alert handler once ``alert_threshold`` consecutive failures occur.
    The business operation is never affected in either mode.
    """

    mode: FailureMode = FailureMode.ALERT
    alert_threshold: int = 1
    append_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.alert_threshold < 1:
            raise ValueError(f"alert_threshold must be >= 1, got {self.alert_threshold}")
        if self.append_timeout_seconds <= 0:
            raise ValueError("append_timeout_seconds must be positive")


@dataclass(frozen=True)
class MiddlewareSettings:
    enabled: bool = True
    excluded_tables: frozenset[str] = field(
        default_factory=lambda: frozenset({"audit_entries", "audit_coverage", "sessions"})
    )
    excluded_operations: frozenset[str] = frozenset()
    include_request_info: bool = True

    def skips(self, table_name: str, operation: str) -> bool:
        return (
            not self.enabled
            or table_name in self.excluded_tables
            or operation in self.excluded_operations
        )
