"""The ``/unstable`` route: a stabler call behind fault and delay injection."""
from __future__ import annotations

import random

from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from common.logging import get_logger
from demo_service.context import RequestContext
from demo_service.pipeline import Handler, inject_faults, slow_down, wrap
from demo_service.stabler import Stabler, UpstreamCallError


def make_unstable_handler(
    stabler: Stabler,
    fault_probability: float = 0.5,
    max_delay_ms: int = 1000,
    rng: random.Random | None = None,
) -> Handler:
    """Build the unstable handler.

    The fault check runs before the delay, so a request that is failed on
    purpose answers immediately and only requests that reach the stabler pay
    for the injected latency.
    """

    async def call_stabler(request: Request, ctx: RequestContext) -> Response:
        log = get_logger(__name__, correlation_id=ctx.correlation_id)
        try:
            body = await stabler.stable(ctx)
        except UpstreamCallError as exc:
            log.error("could not get stable response", extra={"error": str(exc)})
            log.debug("sent response", extra={"code": 500})
            return Response(status_code=500)

        response = PlainTextResponse(body, status_code=200)
        log.debug("sent response", extra={"code": 200, "body_bytes": len(response.body)})
        return response

    return wrap(
        call_stabler,
        inject_faults(fault_probability, rng),
        slow_down(max_delay_ms, rng),
    )
