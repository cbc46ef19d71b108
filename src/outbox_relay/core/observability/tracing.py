"""
OpenTelemetry Tracing

Spans for the outbox, the scheduler and the consumers. The dispatcher
writes W3C trace context into message headers and consumers continue the
trace from them, so one trace covers business write, publish and handling.
"""

import asyncio
import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject, set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

MESSAGING_SYSTEM = "rabbitmq"

_tracer: Optional[trace.Tracer] = None


def init_tracing(
    service_name: str = "outbox-relay",
    service_version: str = "0.1.0",
    otlp_endpoint: Optional[str] = None,
) -> trace.Tracer:
    """
    Install a tracer provider exporting over OTLP/gRPC.

    Without an endpoint spans are still created (and carried in message
    headers) but not exported.
    """
    global _tracer

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    }))

    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
        logger.info(f"OTel tracing: exporting to {otlp_endpoint}")

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(service_name, service_version)
    return _tracer


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("outbox-relay")
    return _tracer


def get_trace_id() -> Optional[str]:
    """Current trace id as 32 hex chars, or None outside a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.trace_id, "032x")
    return None


def get_span_id() -> Optional[str]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.span_id, "016x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    kind: SpanKind = SpanKind.INTERNAL,
    context: Optional[otel_context.Context] = None,
) -> Iterator[Span]:
    """
    Start a span as the current span. Exceptions are recorded on the span
    and re-raised.

    Usage:
        with create_span("outbox.dispatcher.dispatch", {"batch_size": 100}) as span:
            ...
            span.set_attribute("outbox.published", published)
    """
    with get_tracer().start_as_current_span(
        name,
        context=context,
        kind=kind,
        attributes=attributes or {},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def publish_span(exchange: str, routing_key: str, message_id: str):
    """Producer span around one broker publish."""
    return create_span(
        f"{exchange} publish",
        {
            "messaging.system": MESSAGING_SYSTEM,
            "messaging.destination.name": exchange,
            "messaging.rabbitmq.destination.routing_key": routing_key,
            "messaging.message.id": message_id,
        },
        kind=SpanKind.PRODUCER,
    )


def consume_span(consumer_name: str, routing_key: str, message_id: str, headers: Mapping[str, Any]):
    """Consumer span, parented on the trace context found in the headers."""
    return create_span(
        f"{consumer_name} process",
        {
            "messaging.system": MESSAGING_SYSTEM,
            "messaging.consumer.group.name": consumer_name,
            "messaging.rabbitmq.destination.routing_key": routing_key,
            "messaging.message.id": message_id,
        },
        kind=SpanKind.CONSUMER,
        context=extract_trace_context(headers),
    )


def traced(name: Optional[str] = None, attributes: Optional[Dict[str, Any]] = None) -> Callable:
    """
    Trace a coroutine function.

    Usage:
        @traced("outbox.service.save_event")
        async def save_event(self, conn, event): ...
    """
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"@traced needs a coroutine function, got {func.__qualname__}")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            with create_span(name or func.__qualname__, attributes):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


def inject_trace_context(headers: Dict[str, Any]) -> Dict[str, Any]:
    """Add traceparent/tracestate for the current span to message headers."""
    inject(headers)
    return headers


def extract_trace_context(headers: Optional[Mapping[str, Any]]) -> otel_context.Context:
    """
    Parent context from message headers.

    AMQP header values may arrive as bytes; the propagator needs str.
    """
    carrier = {
        key: value.decode("utf-8") if isinstance(value, bytes) else value
        for key, value in (headers or {}).items()
    }
    return extract(carrier)
