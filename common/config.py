"""Environment-driven settings for the demo service.

Every value is read once at startup. Absent variables fall back to a default
and log a warning naming it; malformed values raise ``ConfigurationError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

STABLER_MODES = ("http", "direct")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ConfigurationError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True)
class Settings:
    """Immutable service configuration.

    Attributes:
        host: Interface both listeners bind to.
        logic_port: Port serving ``/stable`` and ``/unstable``.
        metrics_port: Port serving the Prometheus exposition.
        trace_grpc_url: OTLP collector endpoint; console export when ``None``.
        stabler: ``http`` to call ``/stable`` over the network, ``direct`` to
            call it in-process.
        stable_url: URL of the stable endpoint used by the ``http`` stabler.
        upstream_timeout: Seconds before the internal call gives up; ``None``
            waits forever.
        fault_probability: Chance that ``/unstable`` answers 500 without work.
        max_delay_ms: Upper bound (exclusive) of the injected delay.
        shutdown_grace: Seconds in-flight requests get after a stop signal.
        service_name: ``service.name`` resource attribute on spans.
        log_level: Root logger level.
    """

    host: str = "0.0.0.0"
    logic_port: int = 8080
    metrics_port: int = 9090
    trace_grpc_url: str | None = None
    stabler: str = "http"
    stable_url: str = "http://localhost:8080/stable"
    upstream_timeout: float | None = None
    fault_probability: float = 0.5
    max_delay_ms: int = 1000
    shutdown_grace: float = 5.0
    service_name: str = "demo-service"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        logic_port = _port(env, "LOGIC_PORT", cls.logic_port)
        metrics_port = _port(env, "METRICS_PORT", cls.metrics_port)
        if logic_port == metrics_port and logic_port != 0:
            raise ConfigurationError(
                f"LOGIC_PORT and METRICS_PORT must differ, both are {logic_port}"
            )

        stabler = _get(env, "STABLER", cls.stabler).lower()
        if stabler not in STABLER_MODES:
            raise ConfigurationError(
                f"STABLER must be one of {', '.join(STABLER_MODES)}, got {stabler!r}"
            )

        stable_url = _url(env, "STABLE_URL", f"http://localhost:{logic_port}/stable")

        trace_grpc_url = env.get("TRACE_GRPC_URL") or None
        if trace_grpc_url is None:
            logger.warning("TRACE_GRPC_URL not set, spans will be printed to stdout")

        timeout_raw = env.get("UPSTREAM_TIMEOUT_SECONDS")
        upstream_timeout = None
        if timeout_raw:
            upstream_timeout = _positive_float("UPSTREAM_TIMEOUT_SECONDS", timeout_raw)
        else:
            logger.warning("UPSTREAM_TIMEOUT_SECONDS not set, internal calls have no timeout")

        fault_probability = _float(env, "FAULT_PROBABILITY", cls.fault_probability)
        if not 0.0 <= fault_probability <= 1.0:
            raise ConfigurationError(
                f"FAULT_PROBABILITY must be within [0, 1], got {fault_probability}"
            )

        max_delay_ms = _int(env, "MAX_DELAY_MS", cls.max_delay_ms)
        if max_delay_ms < 0:
            raise ConfigurationError(f"MAX_DELAY_MS must not be negative, got {max_delay_ms}")

        log_level = _get(env, "LOG_LEVEL", cls.log_level).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

        return cls(
            host=_get(env, "HOST", cls.host),
            logic_port=logic_port,
            metrics_port=metrics_port,
            trace_grpc_url=trace_grpc_url,
            stabler=stabler,
            stable_url=stable_url,
            upstream_timeout=upstream_timeout,
            fault_probability=fault_probability,
            max_delay_ms=max_delay_ms,
            shutdown_grace=_positive_float(
                "SHUTDOWN_GRACE_SECONDS",
                _get(env, "SHUTDOWN_GRACE_SECONDS", str(cls.shutdown_grace)),
            ),
            service_name=_get(env, "SERVICE_NAME", cls.service_name),
            log_level=log_level,
        )


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key)
    if not value:
        logger.warning("%s not set, defaulting to %s", key, default)
        return default
    return value


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(env, key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def _positive_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value}")
    return value


def _port(env: Mapping[str, str], key: str, default: int) -> int:
    port = _int(env, key, default)
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"{key} must be a TCP port, got {port}")
    return port


def _url(env: Mapping[str, str], key: str, default: str) -> str:
    raw = _get(env, key, default)
    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"{key} must be an absolute http(s) URL, got {raw!r}")
    return raw
