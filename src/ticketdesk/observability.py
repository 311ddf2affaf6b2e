"""Tracing, error reporting and structured logs.

Three things are observed: each HTTP request, each middleware it passes
through, and each organization lookup the tenant resolver makes.  OpenTelemetry
and Sentry are used when they are installed and enabled; the JSON log lines on
the ``ticketdesk.observability`` logger are always written while observability
is enabled.

W3C trace context is honoured: a valid incoming ``traceparent`` is continued
and echoed back, otherwise a new trace is started and returned to the client.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

import msgspec

if TYPE_CHECKING:
    from .edge import RoutingDecision
    from .requests import Request
    from .responses import Response

logger = logging.getLogger("ticketdesk.observability")


class RequestObservabilityConfig(msgspec.Struct, frozen=True):
    span_name: str = "ticketdesk.request"


class TenantObservabilityConfig(msgspec.Struct, frozen=True):
    span_name: str = "ticketdesk.tenant.resolve"


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Switches for each observability backend."""

    enabled: bool = True
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "ticketdesk"
    sentry_enabled: bool = True
    sentry_record_breadcrumbs: bool = False
    sentry_capture_exceptions: bool = True
    sentry_breadcrumb_category: str = "ticketdesk"
    sentry_breadcrumb_level: str = "info"
    request: RequestObservabilityConfig = RequestObservabilityConfig()
    tenant: TenantObservabilityConfig = TenantObservabilityConfig()


_HEX = frozenset("0123456789abcdef")
_MAX_TRACEPARENT_LENGTH = 256
_MAX_TRACESTATE_LENGTH = 512


@dataclass(slots=True, frozen=True)
class TraceParent:
    trace_id: str
    span_id: str
    flags: str = "01"

    @property
    def header(self) -> str:
        return f"00-{self.trace_id}-{self.span_id}-{self.flags}"


def _has_control_characters(value: str) -> bool:
    return any(ord(char) < 32 or char == "\x7f" for char in value)


def _is_hex(value: str, length: int) -> bool:
    return len(value) == length and set(value) <= _HEX


def parse_traceparent(header: str | None) -> TraceParent | None:
    """Parse a W3C ``traceparent`` header; ``None`` when absent or invalid."""

    candidate = (header or "").strip().lower()
    if not candidate or len(candidate) > _MAX_TRACEPARENT_LENGTH or _has_control_characters(candidate):
        return None
    parts = candidate.split("-")
    if len(parts) < 4:
        return None
    version, trace_id, span_id, flags = parts[:4]
    if not (_is_hex(version, 2) and _is_hex(trace_id, 32) and _is_hex(span_id, 16) and _is_hex(flags, 2)):
        return None
    if trace_id == "0" * 32 or span_id == "0" * 16:
        return None
    return TraceParent(trace_id=trace_id, span_id=span_id, flags=flags)


def sanitize_tracestate(header: str | None) -> str | None:
    if not header or _has_control_characters(header):
        return None
    candidate = header.strip()
    if not candidate or len(candidate) > _MAX_TRACESTATE_LENGTH:
        return None
    return candidate


def random_hex(size: int) -> str:
    """Return ``size`` random bytes as hex, never all zeros."""

    if size <= 0:
        raise ValueError("size must be positive")
    while True:
        token = secrets.token_bytes(size)
        if any(token):
            return token.hex()


@dataclass(slots=True)
class Observation:
    """One open span: its identifiers, the backend handles, and its log fields."""

    trace: TraceParent
    request_id: str
    parent_span_id: str | None = None
    traceparent: str | None = None
    tracestate: str | None = None
    span: Any | None = None
    stack: ExitStack = field(default_factory=ExitStack)
    fields: dict[str, Any] = field(default_factory=dict)
    capture_exception: bool = False
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0

    def log_fields(self) -> dict[str, Any]:
        payload = dict(self.fields)
        payload["request_id"] = self.request_id
        payload["trace_id"] = self.trace.trace_id
        payload["span_id"] = self.trace.span_id
        if self.parent_span_id:
            payload["parent_span_id"] = self.parent_span_id
        return payload

    def finish(self, error: BaseException | None = None) -> None:
        if error is None:
            self.stack.close()
        else:
            self.stack.__exit__(type(error), error, error.__traceback__)


class Observability:
    """Coordinate tracing, error tracking and structured logging."""

    def __init__(
        self,
        config: ObservabilityConfig | None = None,
        *,
        id_generator: Callable[[int], str] | None = None,
    ) -> None:
        self.config = config or ObservabilityConfig()
        self._new_id = id_generator or random_hex
        self._tracer: Any | None = None
        self._server_span_kind: Any | None = None
        self._internal_span_kind: Any | None = None
        self._status_cls: Any | None = None
        self._status_ok: Any | None = None
        self._status_error: Any | None = None
        self._otel_extract: Callable[[Mapping[str, str]], Any] | None = None
        self._sentry: Any | None = None
        if self.config.enabled:
            if self.config.opentelemetry_enabled:
                self._load_opentelemetry()
            if self.config.sentry_enabled:
                self._load_sentry()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _load_opentelemetry(self) -> None:
        try:
            from opentelemetry import propagate, trace
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._tracer = trace.get_tracer(self.config.opentelemetry_tracer)
        self._server_span_kind = trace.SpanKind.SERVER
        self._internal_span_kind = trace.SpanKind.INTERNAL
        self._status_cls = trace.Status
        self._status_ok = trace.StatusCode.OK
        self._status_error = trace.StatusCode.ERROR
        self._otel_extract = propagate.extract

    def _load_sentry(self) -> None:
        try:
            import sentry_sdk
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._sentry = sentry_sdk

    # ------------------------------------------------------------------ helpers
    def _emit(self, event: str, observation: Observation | None = None, **fields: Any) -> None:
        if not self.config.enabled:
            return
        payload: dict[str, Any] = {"event": event}
        if observation is not None:
            payload.update(observation.log_fields())
        payload.update((key, value) for key, value in fields.items() if value is not None)
        logger.info(json.dumps(payload, separators=(",", ":")))

    def _as_hex(self, value: Any, size: int, fallback: str | None = None) -> str:
        if isinstance(value, int):
            digits = f"{value:0{size * 2}x}"
        elif isinstance(value, str):
            digits = value.lower()
        else:
            digits = fallback or self._new_id(size)
        return digits.rjust(size * 2, "0")[-size * 2 :]

    def _set_status(self, span: Any | None, ok: bool, description: str | None = None) -> None:
        if span is None or self._status_cls is None or not hasattr(span, "set_status"):
            return
        if ok:
            span.set_status(self._status_cls(self._status_ok))
        else:
            span.set_status(self._status_cls(self._status_error, description=description))

    @staticmethod
    def _record(span: Any | None, attributes: Mapping[str, Any], error: BaseException | None = None) -> None:
        if span is None:
            return
        for key, value in attributes.items():
            span.set_attribute(key, value)
        if error is not None and hasattr(span, "record_exception"):
            span.record_exception(error)

    def _begin(
        self,
        span_name: str,
        *,
        kind: Any | None,
        attributes: Mapping[str, Any],
        parent: Observation | None = None,
        incoming: TraceParent | None = None,
        tracestate: str | None = None,
        sentry_tags: Mapping[str, Any] | None = None,
        breadcrumb: tuple[str, Mapping[str, Any]] | None = None,
        capture_exception: bool = False,
        fields: Mapping[str, Any] | None = None,
    ) -> Observation | None:
        if not self.config.enabled:
            return None
        stack = ExitStack()
        span = None
        if parent is not None:
            trace_id, flags = parent.trace.trace_id, parent.trace.flags
            parent_span_id: str | None = parent.trace.span_id
            request_id = parent.request_id
            tracestate = tracestate or parent.tracestate
        elif incoming is not None:
            trace_id, flags, parent_span_id = incoming.trace_id, incoming.flags, incoming.span_id
            request_id = self._new_id(6)
        else:
            trace_id, flags, parent_span_id = self._new_id(16), "01", None
            request_id = self._new_id(6)
        span_id = self._new_id(8)

        if self._tracer is not None:
            options: dict[str, Any] = {"kind": kind}
            if incoming is not None and self._otel_extract is not None:
                carrier = {"traceparent": f"00-{incoming.trace_id}-{incoming.span_id}-{incoming.flags}"}
                if tracestate:
                    carrier["tracestate"] = tracestate
                options["context"] = self._otel_extract(carrier)
            span = stack.enter_context(self._tracer.start_as_current_span(span_name, **options))
            self._record(span, attributes)
            if hasattr(span, "get_span_context"):
                span_context = span.get_span_context()
                trace_id = self._as_hex(getattr(span_context, "trace_id", None), 16, trace_id)
                span_id = self._as_hex(getattr(span_context, "span_id", None), 8, span_id)
                flags = self._as_hex(getattr(span_context, "trace_flags", None), 1, flags)

        if self._sentry is not None:
            if breadcrumb is not None and self.config.sentry_record_breadcrumbs:
                message, data = breadcrumb
                self._sentry.add_breadcrumb(
                    category=self.config.sentry_breadcrumb_category,
                    level=self.config.sentry_breadcrumb_level,
                    message=message,
                    data=dict(data),
                )
            scope = stack.enter_context(self._sentry.new_scope())
            for key, value in (sentry_tags or {}).items():
                scope.set_tag(key, value)

        trace = TraceParent(trace_id=trace_id, span_id=span_id, flags=flags)
        return Observation(
            trace=trace,
            request_id=request_id,
            parent_span_id=parent_span_id,
            traceparent=incoming.header if incoming is not None else trace.header,
            tracestate=tracestate,
            span=span,
            stack=stack,
            fields=dict(fields or {}),
            capture_exception=capture_exception,
        )

    def _capture(self, error: BaseException) -> None:
        if self._sentry is not None and self.config.sentry_capture_exceptions:
            self._sentry.capture_exception(error)

    # ------------------------------------------------------------------ requests
    def on_request_start(self, request: "Request") -> Observation | None:
        host = request.host or ""
        fields = {"http.method": request.method, "http.path": request.path, "host": host}
        observation = self._begin(
            self.config.request.span_name,
            kind=self._server_span_kind,
            attributes={"http.method": request.method, "http.target": request.path, "http.host": host},
            incoming=parse_traceparent(request.header("traceparent")),
            tracestate=sanitize_tracestate(request.header("tracestate")),
            sentry_tags={"http.method": request.method, "http.host": host},
            capture_exception=True,
            fields=fields,
        )
        if observation is not None:
            self._emit("request.start", observation)
        return observation

    def on_request_success(self, observation: Observation | None, response: "Response") -> "Response":
        if observation is None:
            return response
        self._record(observation.span, {"http.status_code": response.status, "http.result": "success"})
        self._set_status(observation.span, ok=True)
        present = {name.lower() for name, _ in response.headers}
        trace_headers = [
            (name, value)
            for name, value in (("traceparent", observation.traceparent), ("tracestate", observation.tracestate))
            if value and name not in present
        ]
        if trace_headers:
            response = response.with_headers(trace_headers)
        self._emit("request.success", observation, **{"http.status": response.status, "duration_ms": observation.elapsed_ms})
        observation.finish()
        return response

    def on_request_error(
        self,
        observation: Observation | None,
        error: BaseException,
        *,
        status_code: int | None = None,
    ) -> None:
        if observation is None:
            self._capture(error)
            return
        attributes: dict[str, Any] = {"http.result": "error"}
        if status_code is not None:
            attributes["http.status_code"] = status_code
        self._record(observation.span, attributes, error)
        self._set_status(observation.span, ok=False, description=str(error))
        self._emit(
            "request.error",
            observation,
            error_type=type(error).__name__,
            error_message=str(error),
            **{"http.status": status_code},
        )
        if observation.capture_exception:
            self._capture(error)
        observation.finish(error)

    # ------------------------------------------------------------------ middleware
    @staticmethod
    def _middleware_name(middleware: Any) -> str:
        return str(getattr(middleware, "__qualname__", None) or type(middleware).__name__)

    def on_middleware_start(
        self,
        middleware: Any,
        request: "Request",
        parent: Observation | None,
    ) -> Observation | None:
        name = self._middleware_name(middleware)
        observation = self._begin(
            f"{self.config.request.span_name}.middleware",
            kind=self._internal_span_kind,
            attributes={"middleware.name": name, "http.method": request.method, "http.path": request.path},
            parent=parent,
            fields={"middleware": name},
        )
        if observation is not None:
            self._emit("middleware.start", observation)
        return observation

    def on_middleware_success(self, observation: Observation | None) -> None:
        if observation is None:
            return
        self._record(observation.span, {"middleware.result": "success"})
        self._emit("middleware.success", observation, duration_ms=observation.elapsed_ms)
        observation.finish()

    def on_middleware_error(self, observation: Observation | None, error: BaseException) -> None:
        if observation is None:
            return
        self._record(observation.span, {"middleware.result": "error"}, error)
        self._set_status(observation.span, ok=False, description=str(error))
        self._emit("middleware.error", observation, error_type=type(error).__name__, error_message=str(error))
        observation.finish(error)

    # ------------------------------------------------------------------ tenants
    def on_tenant_resolve_start(self, label: str) -> Observation | None:
        return self._begin(
            self.config.tenant.span_name,
            kind=self._internal_span_kind,
            attributes={"tenant.label": label},
            breadcrumb=(f"Resolve tenant '{label}'", {"label": label}),
            fields={"tenant.label": label},
        )

    def on_tenant_resolve_success(self, observation: Observation | None, *, found: bool) -> None:
        if observation is None:
            return
        self._record(observation.span, {"tenant.found": found, "tenant.result": "resolved"})
        observation.finish()

    def on_tenant_resolve_error(self, observation: Observation | None, error: BaseException) -> None:
        if observation is None:
            return
        self._record(observation.span, {"tenant.result": "error"}, error)
        self._set_status(observation.span, ok=False, description=str(error))
        observation.finish(error)

    def on_tenant_route(self, host: str, decision: "RoutingDecision") -> None:
        """Log the terminal state of one routing decision."""

        organization = decision.organization
        self._emit(
            "tenant.route",
            host=host,
            state=decision.state.value,
            label=decision.label,
            path=decision.original_path,
            rewritten_path=decision.path,
            organization_id=organization.id if organization is not None else None,
        )


__all__ = [
    "Observability",
    "ObservabilityConfig",
    "Observation",
    "RequestObservabilityConfig",
    "TenantObservabilityConfig",
    "TraceParent",
    "parse_traceparent",
    "sanitize_tracestate",
]
