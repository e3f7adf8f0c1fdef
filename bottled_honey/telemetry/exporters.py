"""
Event exporters

Turn finalized connection events into telemetry. The OTLP exporter records
each connection as one span whose start and end are the connection's own
timestamps, so spans can be built after the fact.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

import structlog
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.trace import SpanKind, Status, StatusCode

from bottled_honey import __version__
from bottled_honey.config import Settings
from bottled_honey.models import Event, Outcome

logger = structlog.get_logger()

SPAN_NAME = "client"


def _to_ns(moment: datetime) -> int:
    return int(moment.timestamp() * 1_000_000_000)


class EventExporter(ABC):
    """Base class for event exporters."""

    @abstractmethod
    def export(self, event: Event) -> None:
        """Export one event. Must not block for long; may raise."""
        pass

    def shutdown(self) -> None:
        """Flush and release resources."""
        pass


class LogEventExporter(EventExporter):
    """Writes events to the log, for running without a collector."""

    def export(self, event: Event) -> None:
        logger.info("connection_event", **event.model_dump(mode="json"))


class OtlpEventExporter(EventExporter):
    """
    Exports events as OpenTelemetry spans.

    Args:
        endpoint: OTLP/HTTP traces endpoint
        headers: Extra headers sent with every export request
        service_name: ``service.name`` resource attribute
        span_processor: Use this processor instead of batching to OTLP/HTTP
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        service_name: str = "bottled_honey",
        span_processor: Optional[SpanProcessor] = None,
    ):
        resource = Resource.create({SERVICE_NAME: service_name})
        self._provider = TracerProvider(resource=resource, sampler=ALWAYS_ON)
        if span_processor is None:
            span_processor = BatchSpanProcessor(
                OTLPSpanExporter(endpoint=endpoint, headers=headers or None)
            )
        self._provider.add_span_processor(span_processor)
        self._tracer = self._provider.get_tracer("bottled_honey", __version__)

    def export(self, event: Event) -> None:
        span = self._tracer.start_span(
            SPAN_NAME,
            kind=SpanKind.SERVER,
            attributes=event.to_attributes(),
            start_time=_to_ns(event.started_at),
        )
        if event.outcome is not Outcome.COMPLETED:
            reason = event.reason.value if event.reason else event.outcome.value
            span.set_status(Status(StatusCode.ERROR, reason))
        span.end(end_time=_to_ns(event.ended_at))

    def shutdown(self) -> None:
        self._provider.shutdown()


def build_exporter(settings: Settings) -> EventExporter:
    """OTLP exporter when an endpoint is configured, log exporter otherwise."""
    if settings.otel_endpoint:
        logger.info("otlp_exporter_enabled", endpoint=settings.otel_endpoint)
        return OtlpEventExporter(
            endpoint=settings.otel_endpoint,
            headers=settings.parsed_otel_headers(),
            service_name=settings.service_name,
        )
    return LogEventExporter()
