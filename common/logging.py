import logging
from pythonjsonlogger import jsonlogger
from contextvars import ContextVar

from opentelemetry import trace


# ContextVar to hold the correlation id of the request being handled
CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Stamp records with the correlation id and the active trace/span ids."""

    def filter(self, record):
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = CORRELATION_ID.get()
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = trace.format_trace_id(span_context.trace_id)
            record.span_id = trace.format_span_id(span_context.span_id)
        else:
            record.trace_id = None
            record.span_id = None
        return True


def configure_logging(level: str | int = logging.INFO):
    """Configure root logger to output JSON to stdout."""
    root = logging.getLogger()
    root.setLevel(level)
    # avoid adding multiple handlers when re-importing
    if any(isinstance(h.formatter, jsonlogger.JsonFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    fmt = '%(asctime)s %(levelname)s %(name)s %(message)s %(correlation_id)s %(trace_id)s %(span_id)s'
    formatter = jsonlogger.JsonFormatter(fmt)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


class CorrelationIdAdapter(logging.LoggerAdapter):
    """LoggerAdapter that keeps per-call `extra` fields next to the correlation id."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str = 'demo_service', correlation_id: str | None = None) -> logging.LoggerAdapter:
    """Return a LoggerAdapter that injects `correlation_id` into log records."""
    base = logging.getLogger(name)
    extra = {'correlation_id': correlation_id or None}
    return CorrelationIdAdapter(base, extra)
