"""
MutationAuditor -- Transparent auditing of mutating operations.

Responsibility:
    Wraps a mutating callable so that every completed mutation produces an
    audit entry, without call sites doing it manually:

        fetch before-state -> run operation -> capture after-state
            -> build record -> sink.append

Architecture position:
    Kernel > Services -- imperative shell around the pure entry builder.
    Records are handed to an injected ``AuditSink`` (normally
    AuditLogStore); there is no global subscriber list.

Invariants enforced:
    - The business result is returned unchanged, whether or not auditing
      succeeded.  Audit failures are logged, counted and (per the failure
      policy) alerted, never raised to the business caller.
    - The operation's own exceptions (including cancellation) propagate
      unchanged and nothing is written for it.
    - An unauthenticated call never reaches the operation:
      AuditContextMissingError is raised before it runs.

Failure modes:
    - AuditContextMissingError: no AuditContext bound for an audited call.
    - Everything else in the audit step is swallowed and made observable
      (``audit_write_failed`` log, AuditMetrics, alert handler).
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import InstanceState

from audit_kernel.domain.clock import Clock, SystemClock
from audit_kernel.domain.dtos import AuditContext, AuditOperation, AuditRecord
from audit_kernel.domain.entry_builder import build_audit_record
from audit_kernel.domain.policies import (
    FailureMode,
    FailurePolicy,
    MiddlewareSettings,
    RedactionPolicy,
    SnapshotLimits,
)
from audit_kernel.exceptions import AuditContextMissingError
from audit_kernel.logging_config import get_logger
from audit_kernel.observability import (
    EVENT_AUDIT_WRITE_FAILED,
    AlertHandler,
    AuditFailureAlert,
    AuditMetrics,
    log_alert_handler,
)
from audit_kernel.services.audit_context import current_audit_context

logger = get_logger("services.audit_middleware")


class AuditSink(Protocol):
    """Destination for built audit records.  ``append`` may be sync or async."""

    def append(self, record: AuditRecord) -> UUID | Awaitable[UUID]: ...


RecordIdResolver = Callable[[Mapping[str, Any], Any], Any]
BeforeFetcher = Callable[[str], Any]


@dataclass(frozen=True)
class MutationSpec:
    """
    What an audited call mutates.

    Attributes:
        table_name: Logical table targeted.
        operation: Kind of mutation.
        record_id: Optional ``(inputs, result) -> id`` resolver.  ``result``
            is None when resolving before the operation runs.
        fetch_before: Optional ``record_id -> snapshot`` (sync or async),
            consulted for update, delete and soft_delete.
    """

    table_name: str
    operation: AuditOperation
    record_id: RecordIdResolver | None = None
    fetch_before: BeforeFetcher | None = None


# ---------------------------------------------------------------------------
# Procedure path inference
# ---------------------------------------------------------------------------

# Checked in order; the first keyword contained in the action name wins.
_PATH_RULES: tuple[tuple[tuple[str, ...], AuditOperation], ...] = (
    (("restore",), AuditOperation.RESTORE),
    (("softdelete", "soft_delete", "archive"), AuditOperation.SOFT_DELETE),
    (("delete", "remove"), AuditOperation.DELETE),
    (("update", "edit"), AuditOperation.UPDATE),
    (("create", "add"), AuditOperation.CREATE),
)


def infer_operation(action: str) -> AuditOperation | None:
    """Derive the operation from a procedure's action name, or None."""
    name = action.lower()
    for keywords, operation in _PATH_RULES:
        if any(keyword in name for keyword in keywords):
            return operation
    return None


def spec_from_path(
    path: str,
    *,
    record_id: RecordIdResolver | None = None,
    fetch_before: BeforeFetcher | None = None,
) -> MutationSpec | None:
    """
    Build a MutationSpec from a procedure path such as ``"vendors.update"``.

    The first segment is the table, the last the action.  Returns None when
    either cannot be derived.
    """
    parts = [part for part in path.split(".") if part]
    if len(parts) < 2:
        return None
    operation = infer_operation(parts[-1])
    if operation is None:
        return None
    return MutationSpec(
        table_name=parts[0],
        operation=operation,
        record_id=record_id,
        fetch_before=fetch_before,
    )


# ---------------------------------------------------------------------------
# Inputs, ids and snapshots
# ---------------------------------------------------------------------------


def collect_inputs(args: tuple, kwargs: Mapping[str, Any]) -> dict[str, Any]:
    """
    The call's inputs as one mapping.

    Keyword arguments, merged over the first positional argument when that
    is itself a mapping (the single-input-object calling convention).
    """
    inputs: dict[str, Any] = {}
    if args and isinstance(args[0], Mapping):
        inputs.update(args[0])
    inputs.update(kwargs)
    return inputs


def _attribute(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def resolve_record_id(
    spec: MutationSpec,
    inputs: Mapping[str, Any],
    result: Any = None,
) -> str | None:
    """
    Resolve the affected record's id.

    Order: explicit resolver, then ``inputs["id"]``, ``inputs["record_id"]``,
    ``inputs["input"]["id"]``, then the result's ``id``.
    """
    candidates: list[Any] = []
    if spec.record_id is not None:
        candidates.append(spec.record_id(inputs, result))
    candidates.extend([
        inputs.get("id"),
        inputs.get("record_id"),
        _attribute(inputs.get("input"), "id"),
        _attribute(result, "id"),
    ])
    for candidate in candidates:
        if candidate is not None and str(candidate) != "":
            return str(candidate)
    return None


def snapshot_of(value: Any) -> dict[str, Any] | None:
    """
    A plain mapping of ``value``'s fields, or None if it has none.

    Accepts mappings, dataclass instances and SQLAlchemy mapped instances
    (column attributes only; relationships are not followed).
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    state = sa_inspect(value, raiseerr=False)
    if isinstance(state, InstanceState):
        return {attr.key: getattr(value, attr.key) for attr in state.mapper.column_attrs}
    return None


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------


class MutationAuditor:
    """
    Wraps mutating callables with audit capture.

    Contract:
        ``run`` / ``run_async`` execute ``fn`` exactly once and return its
        result unchanged.  When the call is audited and ``fn`` completes,
        exactly one record is built and offered to the sink.

    Non-goals:
        - Does NOT retry failed appends; gaps surface through metrics and
          coverage reports.
        - Does NOT authenticate; the host binds the AuditContext.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        clock: Clock | None = None,
        redaction: RedactionPolicy | None = None,
        snapshot_limits: SnapshotLimits | None = None,
        settings: MiddlewareSettings | None = None,
        failure_policy: FailurePolicy | None = None,
        metrics: AuditMetrics | None = None,
        alert_handler: AlertHandler | None = None,
        context_provider: Callable[[], AuditContext | None] | None = None,
    ):
        self._sink = sink
        self._clock = clock or SystemClock()
        self._redaction = redaction or RedactionPolicy()
        self._limits = snapshot_limits or SnapshotLimits()
        self._settings = settings or MiddlewareSettings()
        self._failure_policy = failure_policy or FailurePolicy()
        self.metrics = metrics or AuditMetrics()
        self._alert_handler = alert_handler or log_alert_handler
        self._context_provider = context_provider or current_audit_context

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _skips(self, spec: MutationSpec) -> bool:
        return self._settings.skips(spec.table_name, spec.operation.value)

    def _require_context(self, spec: MutationSpec) -> AuditContext:
        context = self._context_provider()
        if context is None:
            logger.error(
                "audit_context_missing",
                extra={"table_name": spec.table_name, "operation": spec.operation.value},
            )
            raise AuditContextMissingError(spec.table_name, spec.operation.value)
        if not self._settings.include_request_info:
            context = context.without_request_info()
        return context

    def _wants_before(self, spec: MutationSpec) -> bool:
        return spec.fetch_before is not None and spec.operation.captures_before

    def _log_fetch_failure(self, spec: MutationSpec, record_id: str | None) -> None:
        logger.warning(
            "audit_before_fetch_failed",
            exc_info=True,
            extra={
                "table_name": spec.table_name,
                "operation": spec.operation.value,
                "record_id": record_id,
            },
        )

    def _after_state(self, spec: MutationSpec, result: Any) -> dict[str, Any] | None:
        if spec.operation is AuditOperation.DELETE:
            return None
        return snapshot_of(result)

    def _build(
        self,
        spec: MutationSpec,
        context: AuditContext,
        inputs: Mapping[str, Any],
        before: Any,
        result: Any,
    ) -> AuditRecord:
        return build_audit_record(
            table_name=spec.table_name,
            record_id=resolve_record_id(spec, inputs, result),
            operation=spec.operation,
            before=snapshot_of(before),
            after=self._after_state(spec, result),
            context=context,
            occurred_at=self._clock.now(),
            redaction=self._redaction,
            limits=self._limits,
        )

    def _record_success(self, record: AuditRecord) -> None:
        self.metrics.record_audited(record.table_name)

    def _handle_failure(
        self,
        spec: MutationSpec,
        inputs: Mapping[str, Any],
        result: Any,
        exc: Exception,
    ) -> None:
        """Log, count and (per policy) alert.  Never raises."""
        try:
            record_id = resolve_record_id(spec, inputs, result)
        except Exception:
            record_id = None
        logger.error(
            "audit_write_failed",
            exc_info=exc,
            extra={
                "observability_event": EVENT_AUDIT_WRITE_FAILED,
                "table_name": spec.table_name,
                "operation": spec.operation.value,
                "record_id": record_id,
            },
        )
        consecutive = self.metrics.record_failure(spec.table_name)

        policy = self._failure_policy
        if policy.mode is not FailureMode.ALERT or consecutive < policy.alert_threshold:
            return

        alert = AuditFailureAlert(
            table_name=spec.table_name,
            operation=spec.operation.value,
            record_id=record_id,
            error_type=type(exc).__name__,
            error_code=getattr(exc, "code", None),
            message=str(exc) or type(exc).__name__,
            consecutive_failures=consecutive,
            occurred_at=self._clock.now(),
        )
        try:
            self._alert_handler(alert)
        except Exception:
            logger.exception(
                "audit_alert_handler_failed",
                extra={"table_name": spec.table_name},
            )

    # ------------------------------------------------------------------
    # Synchronous path
    # ------------------------------------------------------------------

    def _fetch_before(self, spec: MutationSpec, inputs: Mapping[str, Any]) -> Any:
        if not self._wants_before(spec):
            return None
        record_id = None
        try:
            record_id = resolve_record_id(spec, inputs)
            if record_id is None:
                return None
            before = spec.fetch_before(record_id)
            if inspect.isawaitable(before):
                if inspect.iscoroutine(before):
                    before.close()
                raise TypeError("async before-fetcher used on the synchronous path")
            return before
        except Exception:
            self._log_fetch_failure(spec, record_id)
            return None

    def run(self, spec: MutationSpec, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn(*args, **kwargs)`` and audit it.  Returns fn's result."""
        if self._skips(spec):
            return fn(*args, **kwargs)

        context = self._require_context(spec)
        inputs = collect_inputs(args, kwargs)
        before = self._fetch_before(spec, inputs)

        result = fn(*args, **kwargs)

        self.metrics.record_observed(spec.table_name)
        try:
            record = self._build(spec, context, inputs, before, result)
            outcome = self._sink.append(record)
            if inspect.isawaitable(outcome):
                if inspect.iscoroutine(outcome):
                    outcome.close()
                raise TypeError("async audit sink used on the synchronous path")
            self._record_success(record)
        except Exception as exc:
            self._handle_failure(spec, inputs, result, exc)

        return result

    # ------------------------------------------------------------------
    # Asynchronous path
    # ------------------------------------------------------------------

    async def _fetch_before_async(self, spec: MutationSpec, inputs: Mapping[str, Any]) -> Any:
        if not self._wants_before(spec):
            return None
        record_id = None
        try:
            record_id = resolve_record_id(spec, inputs)
            if record_id is None:
                return None
            before = spec.fetch_before(record_id)
            if inspect.isawaitable(before):
                before = await before
            return before
        except Exception:
            self._log_fetch_failure(spec, record_id)
            return None

    async def _append_async(self, record: AuditRecord) -> Any:
        if inspect.iscoroutinefunction(self._sink.append):
            return await self._sink.append(record)
        outcome = await asyncio.to_thread(self._sink.append, record)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def run_async(
        self,
        spec: MutationSpec,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Coroutine variant of ``run``.

        The append is bounded by ``failure_policy.append_timeout_seconds``;
        a timeout counts as a failed append.
        """
        if self._skips(spec):
            return await fn(*args, **kwargs)

        context = self._require_context(spec)
        inputs = collect_inputs(args, kwargs)
        before = await self._fetch_before_async(spec, inputs)

        result = await fn(*args, **kwargs)

        self.metrics.record_observed(spec.table_name)
        try:
            record = self._build(spec, context, inputs, before, result)
            await asyncio.wait_for(
                self._append_async(record),
                timeout=self._failure_policy.append_timeout_seconds,
            )
            self._record_success(record)
        except Exception as exc:
            self._handle_failure(spec, inputs, result, exc)

        return result

    # ------------------------------------------------------------------
    # Decorators
    # ------------------------------------------------------------------

    def audited(
        self,
        table_name: str,
        operation: AuditOperation | str,
        *,
        record_id: RecordIdResolver | None = None,
        fetch_before: BeforeFetcher | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Decorator auditing every call of the wrapped function.

        Coroutine functions get the async path, everything else the sync one.
        """
        spec = MutationSpec(
            table_name=table_name,
            operation=AuditOperation(operation),
            record_id=record_id,
            fetch_before=fetch_before,
        )
        return self._decorator_for(spec)

    def procedure(
        self,
        path: str,
        *,
        record_id: RecordIdResolver | None = None,
        fetch_before: BeforeFetcher | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Decorator deriving table and operation from a procedure path.

        ``"vendors.update"`` audits an update on ``vendors``.  Paths with no
        recognizable action are passed through unaudited.
        """
        spec = spec_from_path(path, record_id=record_id, fetch_before=fetch_before)
        if spec is None:
            logger.debug("procedure_not_audited", extra={"path": path})
            return lambda fn: fn
        return self._decorator_for(spec)

    def _decorator_for(self, spec: MutationSpec) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            if inspect.iscoroutinefunction(fn):

                @functools.wraps(fn)
                async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                    return await self.run_async(spec, fn, *args, **kwargs)

                return async_wrapper

            @functools.wraps(fn)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                return self.run(spec, fn, *args, **kwargs)

            return wrapper

        return decorator
