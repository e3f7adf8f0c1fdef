"""
Tests for the telemetry sink and event exporters.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from bottled_honey.config import Settings
from bottled_honey.models import Event, Outcome, TerminationReason
from bottled_honey.telemetry import (
    EventExporter,
    LogEventExporter,
    OtlpEventExporter,
    TelemetrySink,
    build_exporter,
)

STARTED = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_event(port=40000, outcome=Outcome.COMPLETED, reason=None, **fields):
    return Event(
        remote_addr="192.0.2.10",
        remote_port=port,
        outcome=outcome,
        reason=reason,
        started_at=STARTED,
        ended_at=STARTED + timedelta(seconds=2),
        **fields,
    )


class RecordingExporter(EventExporter):
    def __init__(self, fail_on=()):
        self.exported = []
        self.fail_on = set(fail_on)
        self.shutdown_called = False

    def export(self, event):
        if event.remote_port in self.fail_on:
            raise RuntimeError("collector unavailable")
        self.exported.append(event)

    def shutdown(self):
        self.shutdown_called = True


class TestTelemetrySink:
    @pytest.mark.asyncio
    async def test_exports_in_publish_order(self):
        exporter = RecordingExporter()
        sink = TelemetrySink(exporter)
        sink.start()

        for port in (1, 2, 3):
            assert sink.publish(make_event(port=port)) is True
        await sink.stop()

        assert [event.remote_port for event in exporter.exported] == [1, 2, 3]
        assert sink.exported == 3
        assert exporter.shutdown_called

    @pytest.mark.asyncio
    async def test_export_failure_is_contained(self):
        exporter = RecordingExporter(fail_on={2})
        sink = TelemetrySink(exporter)
        sink.start()

        for port in (1, 2, 3):
            sink.publish(make_event(port=port))
        await sink.stop()

        assert [event.remote_port for event in exporter.exported] == [1, 3]
        assert sink.failed == 1
        assert sink.exported == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self):
        sink = TelemetrySink(RecordingExporter(), queue_size=1)

        assert sink.publish(make_event(port=1)) is True
        assert sink.publish(make_event(port=2)) is False
        assert sink.dropped == 1

    @pytest.mark.asyncio
    async def test_publish_before_start_is_exported_once_started(self):
        exporter = RecordingExporter()
        sink = TelemetrySink(exporter)

        sink.publish(make_event(port=7))
        sink.start()
        await asyncio.sleep(0.01)
        await sink.stop()

        assert [event.remote_port for event in exporter.exported] == [7]
        assert not sink.running


class TestOtlpEventExporter:
    @pytest.fixture
    def spans(self):
        return InMemorySpanExporter()

    @pytest.fixture
    def exporter(self, spans):
        exporter = OtlpEventExporter(
            service_name="honeypot-test",
            span_processor=SimpleSpanProcessor(spans),
        )
        yield exporter
        exporter.shutdown()

    def test_completed_event_becomes_span(self, exporter, spans):
        exporter.export(
            make_event(
                version="Terraria279",
                player_name="Guide",
                client_uuid="abc-123",
                packets_received=3,
            )
        )

        (span,) = spans.get_finished_spans()
        assert span.name == "client"
        assert span.kind is SpanKind.SERVER
        assert span.start_time == int(STARTED.timestamp() * 1_000_000_000)
        assert span.end_time - span.start_time == 2_000_000_000
        assert span.status.status_code is StatusCode.UNSET
        assert span.resource.attributes["service.name"] == "honeypot-test"
        assert span.attributes["net.peer.addr"] == "192.0.2.10"
        assert span.attributes["net.peer.port"] == 40000
        assert span.attributes["terraria.version"] == "Terraria279"
        assert span.attributes["terraria.player_name"] == "Guide"
        assert span.attributes["terraria.client_uuid"] == "abc-123"
        assert span.attributes["honeypot.outcome"] == "completed"
        assert span.attributes["honeypot.password_requested"] is False
        assert "honeypot.password_attempt" not in span.attributes

    def test_failed_event_sets_error_status(self, exporter, spans):
        exporter.export(
            make_event(
                outcome=Outcome.TIMEOUT,
                reason=TerminationReason.TIMEOUT,
                password_requested=True,
                password_attempt="hunter2",
            )
        )

        (span,) = spans.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert span.status.description == "timeout"
        assert span.attributes["honeypot.password_attempt"] == "hunter2"
        assert span.attributes["honeypot.reason"] == "timeout"


class TestBuildExporter:
    def test_log_exporter_without_endpoint(self):
        exporter = build_exporter(Settings(otel_endpoint=None))
        assert isinstance(exporter, LogEventExporter)

    def test_otlp_exporter_with_endpoint(self):
        exporter = build_exporter(
            Settings(
                otel_endpoint="http://127.0.0.1:4318/v1/traces",
                otel_headers="authorization=Bearer abc",
            )
        )
        try:
            assert isinstance(exporter, OtlpEventExporter)
        finally:
            exporter.shutdown()

    def test_log_exporter_does_not_raise(self):
        LogEventExporter().export(make_event())
