"""Timing, counting and tracing middleware.

None of these change what a handler answers; they only observe it.
"""
from __future__ import annotations

import time

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

from demo_service.context import RequestContext
from demo_service.pipeline import Handler, Middleware

NAMESPACE = "demo"


class RouteMetrics:
    """Per-route request counters and latency histogram."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.total = Counter(
            "http_requests_total",
            "Total number of handled http requests",
            ["route"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.success = Counter(
            "http_requests_success_total",
            "Total number of successfully handled http requests",
            ["route"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.duration = Histogram(
            "http_request_duration_seconds",
            "Wall-clock time spent handling http requests",
            ["route"],
            namespace=NAMESPACE,
            registry=registry,
        )


def timed(histogram: Histogram, route: str) -> Middleware:
    """Observe handling time once per request, tagged with the trace id."""

    def middleware(next_handler: Handler) -> Handler:
        async def handler(request: Request, ctx: RequestContext) -> Response:
            start = time.perf_counter()
            try:
                return await next_handler(request, ctx)
            finally:
                elapsed = time.perf_counter() - start
                trace_id = ctx.trace_id
                exemplar = {"trace_id": trace_id} if trace_id else None
                histogram.labels(route=route).observe(elapsed, exemplar=exemplar)

        return handler

    return middleware


def counted(metrics: RouteMetrics, route: str) -> Middleware:
    """Count every request, and those answered below 500 as successes."""

    def middleware(next_handler: Handler) -> Handler:
        async def handler(request: Request, ctx: RequestContext) -> Response:
            status = 500
            try:
                response = await next_handler(request, ctx)
                status = response.status_code
                return response
            finally:
                metrics.total.labels(route=route).inc()
                if status < 500:
                    metrics.success.labels(route=route).inc()

        return handler

    return middleware


def traced(tracer: trace.Tracer, name: str) -> Middleware:
    """Run the handler inside a span named ``name``.

    The span becomes ``ctx.span`` downstream so later stages can attach
    events to it.
    """

    def middleware(next_handler: Handler) -> Handler:
        async def handler(request: Request, ctx: RequestContext) -> Response:
            parent = trace.set_span_in_context(ctx.span) if ctx.span.get_span_context().is_valid else None
            with tracer.start_as_current_span(name, context=parent) as span:
                span.set_attribute("http.route", request.url.path)
                if ctx.correlation_id:
                    span.set_attribute("demo.correlation_id", ctx.correlation_id)
                response = await next_handler(request, ctx.with_span(span))
                span.set_attribute("http.status_code", response.status_code)
                if response.status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR))
                return response

        return handler

    return middleware
