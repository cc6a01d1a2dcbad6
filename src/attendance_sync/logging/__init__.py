"""
Structured logging for the attendance sync engine.

Provides JSON log output with service name, correlation IDs and trace context.
Correlation IDs are carried in a context variable so that every log line
emitted while an operation or workflow runs is tagged with its id, including
lines from concurrently running tasks.
"""

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from opentelemetry import trace

PACKAGE_LOGGER = "attendance_sync"

DEFAULT_LOG_FORMAT = (
    "%(asctime)s - %(levelname)s - [%(service_name)s] - [%(correlation_id)s] - "
    "[%(name)s] - %(message)s"
)

LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

DEFAULT_LOG_LEVEL = "INFO"
LOG_OFF_LEVEL = "OFF"

_NO_CORRELATION = "-"

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "attendance_sync_correlation_id", default=None
)

# Attributes every LogRecord has; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
        "asctime",
        "service_name",
        "trace_id",
        "span_id",
        "correlation_id",
    }
)


def get_correlation_id() -> str | None:
    """Return the correlation id bound to the current context, if any."""
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind a correlation id for the duration of the block."""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


class ServiceNameFilter(logging.Filter):
    """Filter to inject service name into log records."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name  # type: ignore[attr-defined]
        return True


class CorrelationFilter(logging.Filter):
    """Filter to inject the context-bound correlation ID into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or _NO_CORRELATION  # type: ignore[attr-defined]
        return True


class TraceContextFilter(logging.Filter):
    """Filter to inject trace context into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            record.trace_id = format(span_context.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(span_context.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = "0" * 32  # type: ignore[attr-defined]
            record.span_id = "0" * 16  # type: ignore[attr-defined]
        return True


class SyncJSONFormatter(logging.Formatter):
    """JSON formatter for structured sync logs."""

    def __init__(self, include_trace: bool = True):
        super().__init__()
        self.include_trace = include_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id and correlation_id != _NO_CORRELATION:
            log_entry["correlation_id"] = correlation_id

        if self.include_trace:
            trace_id = getattr(record, "trace_id", None)
            if trace_id and trace_id != "0" * 32:
                log_entry["trace_id"] = trace_id
                log_entry["span_id"] = getattr(record, "span_id", None)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def configure_logging(
    service_name: str = "attendance-sync",
    level: str = DEFAULT_LOG_LEVEL,
    json_format: bool = True,
    stream=None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        service_name: Service name stamped on every record
        level: One of LOG_LEVELS, or "OFF" to silence the package
        json_format: Emit JSON lines instead of the plain text format
        stream: Output stream (defaults to stderr)

    Returns:
        The configured package logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    level_name = level.upper()
    if level_name == LOG_OFF_LEVEL:
        package_logger.addHandler(logging.NullHandler())
        package_logger.setLevel(logging.CRITICAL + 1)
        package_logger.propagate = False
        return package_logger

    if level_name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(ServiceNameFilter(service_name))
    handler.addFilter(CorrelationFilter())
    handler.addFilter(TraceContextFilter())
    if json_format:
        handler.setFormatter(SyncJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

    package_logger.addHandler(handler)
    package_logger.setLevel(LOG_LEVELS[level_name])
    package_logger.propagate = False
    return package_logger


def configure_logging_from_settings(settings, stream=None) -> logging.Logger:
    """Configure the package logger from a ``LoggingSettings`` block."""
    return configure_logging(
        service_name=settings.service_name,
        level=settings.level,
        json_format=settings.json_format,
        stream=stream,
    )


__all__ = [
    "CorrelationFilter",
    "LOG_LEVELS",
    "ServiceNameFilter",
    "SyncJSONFormatter",
    "TraceContextFilter",
    "configure_logging",
    "configure_logging_from_settings",
    "correlation_scope",
    "get_correlation_id",
]
