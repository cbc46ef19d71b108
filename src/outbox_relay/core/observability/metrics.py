"""
OpenTelemetry Metrics

Counters and histograms for outbox delivery, cleanup, job runs and
consumer-side deduplication. Instruments exist only after init_metrics();
before that every record_* call is a no-op, which keeps unit tests and
tooling free of exporter setup.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

COUNTERS = {
    "outbox_events_saved_total": "Outbox events appended",
    "outbox_events_published_total": "Outbox events published to the broker",
    "outbox_events_retried_total": "Outbox publish failures left pending for retry",
    "outbox_events_failed_total": "Outbox events marked as permanently failed",
    "outbox_events_deleted_total": "Outbox and ledger rows deleted by cleanup",
    "scheduler_job_runs_total": "Scheduled job runs by outcome",
    "inbox_duplicates_total": "Inbound messages skipped as already processed",
}

HISTOGRAMS = {
    "outbox_dispatch_duration_seconds": "Duration of one dispatch pass",
    "outbox_publish_duration_seconds": "Duration of a single broker publish",
    "scheduler_job_duration_seconds": "Duration of a scheduled job run",
}

_meter: Optional[metrics.Meter] = None
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = "outbox-relay",
    otlp_endpoint: Optional[str] = None,
    export_interval_ms: int = 60000,
) -> metrics.Meter:
    """
    Install a meter provider and create the outbox instruments.

    Args:
        service_name: resource service.name
        otlp_endpoint: OTLP/gRPC collector; without it nothing is exported
        export_interval_ms: push interval for the periodic reader
    """
    global _meter

    readers = []
    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms,
        ))
        logger.info(f"OTel metrics: exporting to {otlp_endpoint}")

    metrics.set_meter_provider(MeterProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        metric_readers=readers,
    ))
    _meter = metrics.get_meter(service_name)

    for name, description in COUNTERS.items():
        _counters[name] = _meter.create_counter(name, description=description, unit="1")
    for name, description in HISTOGRAMS.items():
        _histograms[name] = _meter.create_histogram(name, description=description, unit="s")

    return _meter


def get_meter() -> metrics.Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("outbox-relay")
    return _meter


def record_counter(name: str, value: int = 1, attributes: Optional[Dict[str, Any]] = None):
    counter = _counters.get(name)
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Optional[Dict[str, Any]] = None):
    histogram = _histograms.get(name)
    if histogram is not None:
        histogram.record(value, attributes or {})
