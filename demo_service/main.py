"""Demo service exposing a stable and an unstable endpoint.

``/stable`` always answers ``hello world``. ``/unstable`` fetches the same
answer through a :class:`~demo_service.stabler.Stabler` after possibly
failing on purpose and sleeping a random amount, so dashboards have latency
and errors to show. Prometheus metrics are served on a separate port.
"""
from __future__ import annotations

import logging
import random
import signal
import sys
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from prometheus_client import REGISTRY, CollectorRegistry

from common.config import ConfigurationError, Settings
from common.logging import configure_logging
from common.telemetry import TRACER_NAME, instrument_app, setup_tracing, shutdown_tracing, start_metrics_server
from demo_service.instrumentation import RouteMetrics, counted, timed, traced
from demo_service.pipeline import Handler, correlated, wrap
from demo_service.routing import Router, RouterApp
from demo_service.stable import stable_handler
from demo_service.stabler import DirectStabler, HttpStabler, Stabler, TracingStabler
from demo_service.unstable import make_unstable_handler

logger = logging.getLogger(__name__)


def build_routes(
    settings: Settings,
    stabler: Stabler,
    tracer: trace.Tracer,
    metrics: RouteMetrics,
    rng: random.Random | None = None,
) -> dict[str, Handler]:
    stable = wrap(
        stable_handler,
        traced(tracer, "http-stable"),
        timed(metrics.duration, "stable"),
        counted(metrics, "stable"),
        correlated,
    )
    unstable = wrap(
        make_unstable_handler(stabler, settings.fault_probability, settings.max_delay_ms, rng),
        traced(tracer, "http-unstable"),
        timed(metrics.duration, "unstable"),
        counted(metrics, "unstable"),
        correlated,
    )
    return {"/stable": stable, "/unstable": unstable}


def create_app(
    settings: Settings | None = None,
    *,
    stabler: Stabler | None = None,
    rng: random.Random | None = None,
    tracer: trace.Tracer | None = None,
    tracer_provider: TracerProvider | None = None,
    registry: CollectorRegistry = REGISTRY,
) -> FastAPI:
    """Assemble the application.

    Without an explicit ``stabler`` one is built from ``settings`` and
    wrapped in a span. The lifespan closes the internal HTTP client and, when
    a ``tracer_provider`` is given, flushes it on shutdown.
    """
    settings = settings or Settings()
    tracer = tracer or trace.get_tracer(TRACER_NAME)
    client = None
    if stabler is None:
        if settings.stabler == "direct":
            base: Stabler = DirectStabler()
        else:
            client = httpx.AsyncClient()
            base = HttpStabler(client, settings.stable_url, timeout=settings.upstream_timeout)
        stabler = TracingStabler(base, tracer, op_name="stabler")

    router = Router(build_routes(settings, stabler, tracer, RouteMetrics(registry), rng))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application started", extra={"stabler": settings.stabler, "port": settings.logic_port})
        yield
        logger.info("application stopping")
        if client is not None:
            await client.aclose()
        if tracer_provider is not None:
            shutdown_tracing(tracer_provider, settings.shutdown_grace)

    app = FastAPI(title="demo-service", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)

    # no method list: the router alone decides 200, 404 or 500 for any verb
    app.router.add_route("/{path:path}", RouterApp(router), methods=None, include_in_schema=False)

    return app


def build_server(app: FastAPI, settings: Settings) -> uvicorn.Server:
    """uvicorn stops accepting on SIGINT/SIGTERM and gives in-flight requests ``shutdown_grace`` seconds."""
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.logic_port,
        timeout_graceful_shutdown=settings.shutdown_grace,
        log_config=None,
    )
    return uvicorn.Server(config)


def _note_shutdown_signal(signum, frame):
    logger.info("received shutdown signal", extra={"signal": signal.Signals(signum).name})


def install_signal_handlers() -> None:
    """Keep SIGINT/SIGTERM from killing the process once uvicorn hands them back.

    uvicorn captures both signals while serving, then restores the previous
    handlers and raises the caught signal again after it has drained.
    """
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _note_shutdown_signal)


def main() -> None:
    configure_logging()
    try:
        settings = Settings.from_env()
    except ConfigurationError:
        logger.critical("invalid configuration", exc_info=True)
        sys.exit(1)
    configure_logging(settings.log_level)

    provider = setup_tracing(settings)
    app = create_app(settings, tracer=provider.get_tracer(TRACER_NAME), tracer_provider=provider)
    instrument_app(app)

    try:
        metrics_server = start_metrics_server(settings.host, settings.metrics_port)
    except OSError:
        logger.critical("could not start prometheus server", exc_info=True)
        sys.exit(1)

    server = build_server(app, settings)
    install_signal_handlers()
    logger.info("starting logic server", extra={"host": settings.host, "port": settings.logic_port})
    try:
        server.run()
    except SystemExit:
        # uvicorn exits on bind failures before the server starts
        logger.critical("could not start logic server", extra={"port": settings.logic_port})
        raise
    finally:
        logger.info("shutting down prometheus server")
        metrics_server.shutdown()
    logger.info("application stopped")


if __name__ == "__main__":
    main()
