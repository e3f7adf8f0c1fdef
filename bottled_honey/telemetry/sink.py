"""
Telemetry Sink - decouples connection teardown from event export.

Connections call ``publish`` (never blocks); a single background task feeds
queued events to the exporter. Export failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from bottled_honey.exceptions import TelemetryExportError
from bottled_honey.models import Event
from bottled_honey.telemetry.exporters import EventExporter

logger = structlog.get_logger()

_STOP = object()


class TelemetrySink:
    """Bounded queue of finalized events plus the task that exports them."""

    def __init__(self, exporter: EventExporter, queue_size: int = 1024):
        self.exporter = exporter
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None

        # Statistics
        self.published = 0
        self.dropped = 0
        self.exported = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="telemetry-sink")

    def publish(self, event: Event) -> bool:
        """Queue an event for export. Returns False if it had to be dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "telemetry_queue_full",
                remote_addr=event.remote_addr,
                remote_port=event.remote_port,
                dropped=self.dropped,
            )
            return False
        self.published += 1
        return True

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                self._export(item)
            finally:
                self._queue.task_done()

    def _export(self, event: Event) -> None:
        try:
            self.exporter.export(event)
        except Exception as e:
            self.failed += 1
            error = TelemetryExportError(
                f"Failed to export event: {e}",
                details={"error_type": type(e).__name__},
            )
            logger.error(
                "telemetry_export_failed",
                error=error.message,
                remote_addr=event.remote_addr,
                remote_port=event.remote_port,
                **error.details,
            )
            return
        self.exported += 1

    async def stop(self) -> None:
        """Export everything already queued, then shut the exporter down."""
        if self._task is not None:
            await self._queue.put(_STOP)
            await self._task
            self._task = None
        await asyncio.to_thread(self.exporter.shutdown)
        logger.info(
            "telemetry_sink_stopped",
            published=self.published,
            exported=self.exported,
            failed=self.failed,
            dropped=self.dropped,
        )
