"""Ways of obtaining the canonical ``/stable`` response.

Every implementation satisfies :class:`Stabler`, so the unstable handler can
be given an in-process call, a network call, or either of them inside a span.
Failures are reported by raising :class:`UpstreamCallError`.
"""
from __future__ import annotations

from typing import Protocol

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from common.logging import get_logger
from demo_service.context import CORRELATION_HEADER, RequestContext
from demo_service.stable import hello


class UpstreamCallError(Exception):
    """The stable response could not be obtained."""


class DialError(UpstreamCallError):
    """The stable endpoint could not be reached."""


class ReadError(UpstreamCallError):
    """The stable endpoint answered but its body could not be read."""


class UpstreamStatusError(UpstreamCallError):
    """The stable endpoint answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int):
        super().__init__(f"{url} answered with status {status_code}")
        self.status_code = status_code


class Stabler(Protocol):
    async def stable(self, ctx: RequestContext) -> str: ...


class DirectStabler:
    """Runs the stable handler's logic in the current process."""

    async def stable(self, ctx: RequestContext) -> str:
        return hello(ctx)


class HttpStabler:
    """Fetches ``/stable`` over HTTP, forwarding the correlation id."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float | None = None):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def stable(self, ctx: RequestContext) -> str:
        log = get_logger(__name__, correlation_id=ctx.correlation_id)
        headers = {CORRELATION_HEADER: ctx.correlation_id} if ctx.correlation_id else {}
        request = self.client.build_request("GET", self.url, headers=headers, timeout=self.timeout)

        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            log.error("stabler.send_failed", extra={"url": self.url, "error": repr(exc)})
            raise DialError(f"could not send get request to {self.url}: {exc}") from exc

        try:
            if not response.is_success:
                log.error("stabler.bad_status", extra={"url": self.url, "status_code": response.status_code})
                raise UpstreamStatusError(self.url, response.status_code)
            try:
                body = await response.aread()
            except httpx.HTTPError as exc:
                log.error("stabler.read_failed", extra={"error": repr(exc)})
                raise ReadError(f"could not read response bytes: {exc}") from exc
            return body.decode(response.encoding or "utf-8", errors="replace")
        finally:
            await _release(response, log)


async def _release(response: httpx.Response, log) -> None:
    """Close ``response``; a failure here is logged since the outcome is already decided."""
    try:
        await response.aclose()
    except Exception as exc:
        log.error("stabler.release_failed", extra={"error": repr(exc)})


class TracingStabler:
    """Wraps another stabler in a span that brackets exactly its call."""

    def __init__(self, stabler: Stabler, tracer: trace.Tracer, op_name: str = "stabler"):
        self.stabler = stabler
        self.tracer = tracer
        self.op_name = op_name

    async def stable(self, ctx: RequestContext) -> str:
        parent = trace.set_span_in_context(ctx.span) if ctx.span.get_span_context().is_valid else None
        with self.tracer.start_as_current_span(
            self.op_name, context=parent, record_exception=False, set_status_on_exception=False
        ) as span:
            if ctx.correlation_id:
                span.set_attribute("demo.correlation_id", ctx.correlation_id)
            try:
                return await self.stabler.stable(ctx.with_span(span))
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
