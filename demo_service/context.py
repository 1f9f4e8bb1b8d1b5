"""Request-scoped values threaded through the handler pipeline."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace

from opentelemetry import trace
from starlette.requests import Request

CORRELATION_HEADER = "correlation-id"


@dataclass(frozen=True)
class RequestContext:
    """Immutable per-request values.

    Middleware never mutates a context; it derives a new one and passes it
    downstream, so concurrent requests cannot observe each other's values.
    """

    correlation_id: str = ""
    span: trace.Span = trace.INVALID_SPAN

    def with_correlation_id(self, correlation_id: str) -> "RequestContext":
        return replace(self, correlation_id=correlation_id)

    def with_span(self, span: trace.Span) -> "RequestContext":
        return replace(self, span=span)

    @property
    def trace_id(self) -> str | None:
        span_context = self.span.get_span_context()
        if not span_context.is_valid:
            return None
        return trace.format_trace_id(span_context.trace_id)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def ensure_correlation_id(request: Request, ctx: RequestContext) -> RequestContext:
    """Resolve the correlation id for ``request``.

    An id already present on the context wins, then the ``correlation-id``
    header, and only then a freshly generated one.
    """
    if ctx.correlation_id:
        return ctx
    correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
    return ctx.with_correlation_id(correlation_id)
