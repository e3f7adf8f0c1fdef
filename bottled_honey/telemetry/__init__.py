"""
Telemetry hand-off for finalized connection events.

Connections publish onto the TelemetrySink's queue and never wait on export;
a background task passes events to an EventExporter.
"""
from bottled_honey.telemetry.exporters import (
    EventExporter,
    LogEventExporter,
    OtlpEventExporter,
    build_exporter,
)
from bottled_honey.telemetry.sink import TelemetrySink

__all__ = [
    "EventExporter",
    "LogEventExporter",
    "OtlpEventExporter",
    "TelemetrySink",
    "build_exporter",
]
