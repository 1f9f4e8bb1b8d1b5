from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from common.logging import get_logger
from demo_service.context import RequestContext

HELLO = "hello world"


def hello(ctx: RequestContext) -> str:
    get_logger(__name__, correlation_id=ctx.correlation_id).info("stable.handled")
    return HELLO


async def stable_handler(request: Request, ctx: RequestContext) -> Response:
    # method, headers and body are deliberately ignored
    return PlainTextResponse(hello(ctx), status_code=200)
