"""Shared fixtures for the demo service tests."""
import random

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry
from starlette.requests import Request

from common.config import Settings


class FixedRandom(random.Random):
    """Random source whose coin flips and delays are chosen by the test."""

    def __init__(self, value: float = 0.99, delay: int = 0):
        super().__init__(0)
        self.value = value
        self.delay = delay
        self.delays_requested = []

    def random(self):
        return self.value

    def randrange(self, *args, **kwargs):
        self.delays_requested.append(args)
        return self.delay


def _make_request(path: str = "/unstable", method: str = "GET", headers: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": raw_headers,
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
        "root_path": "",
        "http_version": "1.1",
    }
    return Request(scope)


@pytest.fixture
def make_request():
    """Factory for bare Starlette requests that skip the HTTP layer."""
    return _make_request


@pytest.fixture
def fixed_random():
    return FixedRandom


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider.get_tracer("tests")


@pytest.fixture
def quiet_settings():
    """Settings with injection switched off so answers are deterministic."""
    return Settings(fault_probability=0.0, max_delay_ms=0, stabler="direct")
