"""Tracing and metrics bootstrap.

Spans go to an OTLP collector when ``TRACE_GRPC_URL`` is configured and to
stdout otherwise. Metrics are exposed by ``prometheus_client`` on their own
listener.
"""
import logging
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import REGISTRY, CollectorRegistry, make_wsgi_app

from common.config import Settings

logger = logging.getLogger(__name__)

TRACER_NAME = "demo_service"


def make_exporter(settings: Settings):
    if settings.trace_grpc_url:
        return OTLPSpanExporter(endpoint=settings.trace_grpc_url, insecure=True)
    return ConsoleSpanExporter()


def setup_tracing(settings: Settings) -> TracerProvider:
    """Install a global tracer provider that samples every request."""
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: settings.service_name}))
    provider.add_span_processor(BatchSpanProcessor(make_exporter(settings)))
    trace.set_tracer_provider(provider)
    logger.info("tracing.initialized", extra={"collector": settings.trace_grpc_url or "console"})
    return provider


def instrument_app(app: FastAPI) -> None:
    """Create server spans for inbound requests and client spans for httpx calls.

    The httpx instrumentation also injects ``traceparent`` into the internal
    call to ``/stable`` so both hops share one trace.
    """
    FastAPIInstrumentor().instrument_app(app)
    HTTPXClientInstrumentor().instrument()


def shutdown_tracing(provider: TracerProvider, timeout: float) -> None:
    """Flush pending spans, then stop the exporter. Failures are only logged."""
    logger.info("tracing.shutdown")
    try:
        if not provider.force_flush(timeout_millis=int(timeout * 1000)):
            logger.warning("tracing.flush_timeout", extra={"timeout_s": timeout})
    except Exception:
        logger.exception("tracing.flush_failed")
    finally:
        try:
            provider.shutdown()
        except Exception:
            logger.exception("tracing.shutdown_failed")


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _SilentHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


def metrics_app(registry: CollectorRegistry = REGISTRY):
    """WSGI app serving the exposition on ``/metrics`` and ``not found`` elsewhere."""
    exposition = make_wsgi_app(registry)

    def app(environ, start_response):
        if environ.get("PATH_INFO") == "/metrics":
            return exposition(environ, start_response)
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"not found"]

    return app


def start_metrics_server(host: str, port: int, registry: CollectorRegistry = REGISTRY) -> WSGIServer:
    """Serve the Prometheus exposition from a daemon thread.

    Returns the underlying ``WSGIServer`` so the caller can stop it on exit.
    Raises ``OSError`` when the port cannot be bound.
    """
    server = make_server(
        host, port, metrics_app(registry), server_class=_ThreadingWSGIServer, handler_class=_SilentHandler
    )
    threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True).start()
    logger.info("metrics.started", extra={"port": server.server_address[1]})
    return server
