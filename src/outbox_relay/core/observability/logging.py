"""
Structured Logging with Trace Correlation

One JSON object per line on stdout. Call sites pass their fields through
`extra={...}` (event_id, job, routing_key, consumer, ...) and every record
is stamped with the service name and the current trace and span ids.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .tracing import get_span_id, get_trace_id

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "service", "trace_id", "span_id",
))

_QUIET_LOGGERS = ("aio_pika", "aiormq", "asyncpg", "uvicorn.access", "opentelemetry")


class TraceContextFilter(logging.Filter):
    """Stamps service, trace_id and span_id on every record."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        record.trace_id = get_trace_id()
        record.span_id = get_span_id()
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": getattr(record, "service", None),
            "trace_id": getattr(record, "trace_id", None),
            "span_id": getattr(record, "span_id", None),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)

        return json.dumps(entry)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "trace_id", None) is None:
            record.trace_id = "no-trace"
        return super().format(record)


def configure_logging(
    level: str = "INFO",
    structured: bool = True,
    service_name: str = "outbox-relay",
):
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        structured: JSON lines when true, plain text otherwise
        service_name: stamped on every record
    """
    numeric_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(TraceContextFilter(service_name))

    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(_TextFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s"
        ))

    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "logging configured",
        extra={"log_level": level, "structured": structured},
    )
