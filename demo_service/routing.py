from __future__ import annotations

from typing import Mapping

from opentelemetry import trace
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from common.logging import get_logger
from demo_service.context import RequestContext
from demo_service.pipeline import Handler

logger = get_logger(__name__)


def not_found() -> Response:
    return PlainTextResponse("not found", status_code=404)


class Router:
    """Dispatch on the exact request path; anything unknown is a 404."""

    def __init__(self, routes: Mapping[str, Handler]):
        self.routes = dict(routes)

    async def __call__(self, request: Request) -> Response:
        logger.info("handling new request", extra={"uri": str(request.url), "method": request.method})
        handler = self.routes.get(request.url.path)
        if handler is None:
            return not_found()
        # the server span opened by the FastAPI instrumentation parents the route span
        ctx = RequestContext(span=trace.get_current_span())
        return await handler(request, ctx)


class RouterApp:
    """ASGI face of a :class:`Router`.

    Starlette only skips its method check for raw ASGI endpoints, so the
    router is mounted through this instead of a request/response function.
    """

    def __init__(self, router: Router):
        self.router = router

    async def __call__(self, scope, receive, send) -> None:
        response = await self.router(Request(scope, receive))
        await response(scope, receive, send)
