"""
Fingerprint - write-once record of what a client told us.

Fields are captured as the handshake progresses and frozen into a single
Event when the connection reaches a terminal state. ``finalize`` only ever
produces one Event, so a timeout racing a normal completion can't emit twice.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from bottled_honey.models import Event, Outcome, TerminationReason

logger = structlog.get_logger()

CAPTURABLE_FIELDS = frozenset(
    {"version", "password_attempt", "player_name", "client_uuid"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Fingerprint:
    """Accumulates captured client attributes for one connection."""

    def __init__(self, remote_addr: str, remote_port: int, started_at: Optional[datetime] = None):
        self.remote_addr = remote_addr
        self.remote_port = remote_port
        self.started_at = started_at or utcnow()
        self.first_packet_at: Optional[datetime] = None
        self.last_packet_at: Optional[datetime] = None
        self.packets_received = 0
        self._fields: Dict[str, Any] = {}
        self._event: Optional[Event] = None

    @property
    def finalized(self) -> bool:
        return self._event is not None

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._fields)

    def get(self, name: str) -> Any:
        return self._fields.get(name)

    def capture(self, name: str, value: Any) -> bool:
        """
        Record a field once.

        Returns False (and keeps the first value) when the field was already
        captured or the fingerprint has been finalized.
        """
        if name not in CAPTURABLE_FIELDS:
            raise KeyError(f"unknown fingerprint field: {name}")
        if self.finalized:
            logger.warning("fingerprint_capture_after_finalize", field=name)
            return False
        if name in self._fields:
            logger.warning(
                "fingerprint_field_already_captured",
                field=name,
                remote_addr=self.remote_addr,
                remote_port=self.remote_port,
            )
            return False
        self._fields[name] = value
        return True

    def touch(self, now: Optional[datetime] = None) -> None:
        """Note that a packet arrived."""
        now = now or utcnow()
        if self.first_packet_at is None:
            self.first_packet_at = now
        self.last_packet_at = now
        self.packets_received += 1

    def finalize(
        self,
        reason: Optional[TerminationReason],
        password_requested: bool,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Event]:
        """
        Freeze the fingerprint into an Event.

        ``reason`` None means the handshake completed. Only the first call
        returns an Event; later calls return None.
        """
        if self._event is not None:
            return None

        outcome = reason.outcome if reason is not None else Outcome.COMPLETED
        self._event = Event(
            remote_addr=self.remote_addr,
            remote_port=self.remote_port,
            version=self._fields.get("version"),
            player_name=self._fields.get("player_name"),
            client_uuid=self._fields.get("client_uuid"),
            password_requested=password_requested,
            password_attempt=self._fields.get("password_attempt"),
            outcome=outcome,
            reason=reason,
            started_at=self.started_at,
            ended_at=ended_at or utcnow(),
            first_packet_at=self.first_packet_at,
            last_packet_at=self.last_packet_at,
            packets_received=self.packets_received,
        )
        return self._event
