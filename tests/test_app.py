"""End-to-end behaviour of the routed application."""
import random

import httpx
import pytest
from fastapi.testclient import TestClient

from common.config import Settings
from demo_service.context import RequestContext
from demo_service.main import create_app
from demo_service.stabler import DialError, DirectStabler, HttpStabler
from demo_service.unstable import make_unstable_handler

METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "TRACE", "PROPFIND"]


class FailingStabler:
    async def stable(self, ctx):
        raise DialError("could not reach stable endpoint")


@pytest.fixture
def client(quiet_settings, registry, tracer):
    app = create_app(quiet_settings, registry=registry, tracer=tracer)
    with TestClient(app) as test_client:
        yield test_client


@pytest.mark.parametrize("method", METHODS)
def test_stable_always_says_hello(client, method):
    response = client.request(
        method, "/stable", headers={"correlation-id": "x", "X-Anything": "1"}, content=b"ignored"
    )

    assert response.status_code == 200
    assert response.text == "hello world"


@pytest.mark.parametrize("method", METHODS)
def test_unknown_path_is_not_found(client, method):
    response = client.request(method, "/other")

    assert response.status_code == 404
    assert response.text == "not found"


def test_root_and_docs_are_not_found(client):
    assert client.get("/").status_code == 404
    assert client.get("/docs").status_code == 404


def test_unstable_pass_through_always_succeeds(quiet_settings, registry, tracer, fixed_random):
    rng = fixed_random(value=0.0, delay=0)
    app = create_app(quiet_settings, registry=registry, tracer=tracer, rng=rng)
    with TestClient(app) as test_client:
        responses = [test_client.get("/unstable") for _ in range(20)]

    assert all(r.status_code == 200 and r.text == "hello world" for r in responses)


def test_unstable_applies_delay_on_every_request(registry, tracer, fixed_random):
    settings = Settings(fault_probability=0.0, max_delay_ms=1000, stabler="direct")
    rng = fixed_random(delay=20)
    app = create_app(settings, registry=registry, tracer=tracer, rng=rng)
    with TestClient(app) as test_client:
        for _ in range(3):
            assert test_client.get("/unstable").text == "hello world"

    assert rng.delays_requested == [(1000,)] * 3


def test_unstable_upstream_error_becomes_500(quiet_settings, registry, tracer):
    app = create_app(quiet_settings, registry=registry, tracer=tracer, stabler=FailingStabler())
    with TestClient(app) as test_client:
        response = test_client.get("/unstable")

    assert response.status_code == 500
    assert response.content == b""


def test_correlation_id_reaches_stable_call(quiet_settings, registry, tracer):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("correlation-id"))
        return httpx.Response(200, text="hello world")

    stabler = HttpStabler(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "http://stable.test/stable")
    app = create_app(quiet_settings, registry=registry, tracer=tracer, stabler=stabler)
    with TestClient(app) as test_client:
        response = test_client.get("/unstable", headers={"correlation-id": "abc-123"})

    assert response.status_code == 200
    assert response.text == "hello world"
    assert seen == ["abc-123"]


def test_unstable_calls_stable_route_over_http(quiet_settings, registry, tracer):
    app = None

    async def forward(scope, receive, send):
        await app(scope, receive, send)

    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=forward))
    stabler = HttpStabler(client, "http://testserver/stable")
    app = create_app(quiet_settings, registry=registry, tracer=tracer, stabler=stabler)
    with TestClient(app) as test_client:
        response = test_client.get("/unstable", headers={"correlation-id": "hop-1"})

    assert response.status_code == 200
    assert response.text == "hello world"
    assert registry.get_sample_value("demo_http_requests_total", {"route": "stable"}) == 1
    assert registry.get_sample_value("demo_http_requests_total", {"route": "unstable"}) == 1


def test_counters_and_histogram(registry, tracer, fixed_random):
    settings = Settings(fault_probability=0.5, max_delay_ms=0, stabler="direct")
    rng = fixed_random(value=0.1)
    app = create_app(settings, registry=registry, tracer=tracer, rng=rng)
    with TestClient(app) as test_client:
        test_client.get("/stable")
        test_client.get("/stable")
        assert test_client.get("/unstable").status_code == 500
        test_client.get("/other")

    def sample(name, route):
        return registry.get_sample_value(name, {"route": route})

    assert sample("demo_http_requests_total", "stable") == 2
    assert sample("demo_http_requests_success_total", "stable") == 2
    assert sample("demo_http_requests_total", "unstable") == 1
    assert sample("demo_http_requests_success_total", "unstable") == 0
    assert sample("demo_http_request_duration_seconds_count", "stable") == 2
    assert sample("demo_http_request_duration_seconds_count", "unstable") == 1


def test_route_span_encloses_stabler_span(quiet_settings, registry, tracer, span_exporter):
    app = create_app(quiet_settings, registry=registry, tracer=tracer)
    with TestClient(app) as test_client:
        test_client.get("/unstable", headers={"correlation-id": "abc"})

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert set(spans) == {"stabler", "http-unstable"}
    assert spans["stabler"].parent.span_id == spans["http-unstable"].context.span_id
    assert spans["stabler"].attributes["demo.correlation_id"] == "abc"
    assert spans["http-unstable"].attributes["http.status_code"] == 200
    assert spans["http-unstable"].attributes["demo.delay_ms"] == 0


@pytest.mark.asyncio
async def test_active_fault_injection_fails_about_half(make_request):
    handler = make_unstable_handler(DirectStabler(), fault_probability=0.5, max_delay_ms=0, rng=random.Random(1234))
    request = make_request()

    statuses = [(await handler(request, RequestContext(correlation_id="c"))).status_code for _ in range(1000)]

    failures = statuses.count(500)
    assert statuses.count(200) + failures == 1000
    assert 0.45 < failures / 1000 < 0.55
