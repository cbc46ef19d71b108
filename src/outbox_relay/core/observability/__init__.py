"""
Observability Module

Provides distributed tracing, metrics collection, and structured logging.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_trace_id,
    get_span_id,
    create_span,
    publish_span,
    consume_span,
    inject_trace_context,
    extract_trace_context,
    traced,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_trace_id",
    "get_span_id",
    "create_span",
    "publish_span",
    "consume_span",
    "inject_trace_context",
    "extract_trace_context",
    "traced",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "configure_logging",
]
