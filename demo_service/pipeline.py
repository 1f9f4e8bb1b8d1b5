"""Handler composition and the request-shaping middleware.

A handler is ``async (request, ctx) -> response``; a middleware takes a
handler and returns another one. ``wrap`` nests them so the first middleware
listed runs first on the way in and last on the way out.
"""
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable

from starlette.requests import Request
from starlette.responses import Response

from common.logging import CORRELATION_ID, get_logger
from demo_service.context import RequestContext, ensure_correlation_id

Handler = Callable[[Request, RequestContext], Awaitable[Response]]
Middleware = Callable[[Handler], Handler]


def wrap(handler: Handler, *middleware: Middleware) -> Handler:
    """Return ``middleware[0](middleware[1](...middleware[-1](handler)))``."""
    for mid in reversed(middleware):
        handler = mid(handler)
    return handler


def pass_through(next_handler: Handler) -> Handler:
    return next_handler


def correlated(next_handler: Handler) -> Handler:
    """Resolve the correlation id and expose it to log records downstream."""

    async def handler(request: Request, ctx: RequestContext) -> Response:
        had_id = bool(ctx.correlation_id)
        ctx = ensure_correlation_id(request, ctx)
        log = get_logger(__name__, correlation_id=ctx.correlation_id)
        if had_id:
            log.debug("correlation.present")
        token = CORRELATION_ID.set(ctx.correlation_id)
        try:
            log.info("request.start", extra={"path": request.url.path})
            return await next_handler(request, ctx)
        finally:
            CORRELATION_ID.reset(token)

    return handler


def inject_faults(probability: float, rng: random.Random | None = None) -> Middleware:
    """Answer 500 without calling downstream on a ``probability`` coin flip.

    A probability of zero keeps the hook in the chain as a no-op.
    """
    if probability <= 0:
        return pass_through
    rng = rng or random.Random()

    def middleware(next_handler: Handler) -> Handler:
        async def handler(request: Request, ctx: RequestContext) -> Response:
            if rng.random() < probability:
                log = get_logger(__name__, correlation_id=ctx.correlation_id)
                log.warning("fault.injected", extra={"probability": probability})
                ctx.span.add_event("fault injected", {"demo.fault_probability": probability})
                return Response(status_code=500)
            return await next_handler(request, ctx)

        return handler

    return middleware


def slow_down(max_delay_ms: int = 1000, rng: random.Random | None = None, sleep=asyncio.sleep) -> Middleware:
    """Sleep a uniform ``[0, max_delay_ms)`` milliseconds before delegating.

    The chosen delay is attached to the request span so slow traces can be
    matched with their injected cause.
    """
    rng = rng or random.Random()

    def middleware(next_handler: Handler) -> Handler:
        async def handler(request: Request, ctx: RequestContext) -> Response:
            ms = rng.randrange(max_delay_ms) if max_delay_ms > 0 else 0
            log = get_logger(__name__, correlation_id=ctx.correlation_id)
            log.info("slowing down", extra={"ms": ms})
            ctx.span.add_event("slowing down", {"demo.delay_ms": ms})
            ctx.span.set_attribute("demo.delay_ms", ms)
            await sleep(ms / 1000)
            return await next_handler(request, ctx)

        return handler

    return middleware

