"""
Core data models
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class Outcome(str, Enum):
    """How a connection ended, as reported to telemetry"""

    COMPLETED = "completed"
    PROTOCOL_ERROR = "protocol_error"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    PASSWORD_REJECTED = "password_rejected"


class TerminationReason(str, Enum):
    """Detailed reason a handshake stopped short of completion"""

    UNEXPECTED_PACKET = "unexpected_packet"
    MALFORMED_FRAME = "malformed_frame"
    FRAME_TOO_LARGE = "frame_too_large"
    TRUNCATED = "truncated"
    MALFORMED_PACKET = "malformed_packet"
    UNKNOWN_SIGNATURE = "unknown_signature"
    PASSWORD_REJECTED = "password_rejected"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    IO_ERROR = "io_error"
    SHUTDOWN = "shutdown"

    @property
    def outcome(self) -> Outcome:
        return _REASON_OUTCOMES[self]


_REASON_OUTCOMES = {
    TerminationReason.UNEXPECTED_PACKET: Outcome.PROTOCOL_ERROR,
    TerminationReason.MALFORMED_FRAME: Outcome.PROTOCOL_ERROR,
    TerminationReason.FRAME_TOO_LARGE: Outcome.PROTOCOL_ERROR,
    TerminationReason.TRUNCATED: Outcome.PROTOCOL_ERROR,
    TerminationReason.MALFORMED_PACKET: Outcome.PROTOCOL_ERROR,
    TerminationReason.UNKNOWN_SIGNATURE: Outcome.PROTOCOL_ERROR,
    TerminationReason.PASSWORD_REJECTED: Outcome.PASSWORD_REJECTED,
    TerminationReason.TIMEOUT: Outcome.TIMEOUT,
    TerminationReason.DISCONNECTED: Outcome.DISCONNECTED,
    TerminationReason.IO_ERROR: Outcome.DISCONNECTED,
    TerminationReason.SHUTDOWN: Outcome.DISCONNECTED,
}


class Event(BaseModel):
    """Finalized, immutable record of one connection"""

    model_config = ConfigDict(frozen=True)

    remote_addr: str
    remote_port: int
    version: Optional[str] = None
    player_name: Optional[str] = None
    client_uuid: Optional[str] = None
    password_requested: bool = False
    password_attempt: Optional[str] = None
    outcome: Outcome
    reason: Optional[TerminationReason] = None
    started_at: datetime
    ended_at: datetime
    first_packet_at: Optional[datetime] = None
    last_packet_at: Optional[datetime] = None
    packets_received: int = 0

    def to_attributes(self) -> Dict[str, Any]:
        """Flatten into span attributes, leaving out fields that were never captured."""
        attributes: Dict[str, Any] = {
            "net.peer.addr": self.remote_addr,
            "net.peer.port": self.remote_port,
            "terraria.version": self.version,
            "terraria.player_name": self.player_name,
            "terraria.client_uuid": self.client_uuid,
            "honeypot.password_requested": self.password_requested,
            "honeypot.password_attempt": self.password_attempt,
            "honeypot.outcome": self.outcome.value,
            "honeypot.reason": self.reason.value if self.reason else None,
            "honeypot.packets_received": self.packets_received,
        }
        return {key: value for key, value in attributes.items() if value is not None}
