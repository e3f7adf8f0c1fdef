"""
Handshake State Machine - drives one client through the Terraria login.

The machine is sans-IO: ``handle`` takes one decoded packet and returns the
packets to send back, and the connection driver does the actual reading and
writing. It knows only the handful of packet ids needed to look like a real
server up to the point the client sends its player info; anything else seen
before then terminates the connection.

State flow:

    AWAIT_CONNECT_REQUEST
        |  ConnectRequest ("Terraria<release>")
        +--[password decision]--> REQUEST_PASSWORD -> AWAIT_PASSWORD
        |                                                 |  SendPassword
        v                                                 v
    AWAIT_PLAYER_INFO <-----------------------------------+ (unless rejecting)
        |  PlayerInfo
        v
    COMPLETED

Any non-terminal state can move to TERMINATED with a TerminationReason.
"""
from __future__ import annotations

from enum import Enum, IntEnum
from typing import List, Optional

import structlog

from bottled_honey.engine.codec import Packet, PacketBuilder, PacketReader
from bottled_honey.engine.fingerprint import Fingerprint
from bottled_honey.exceptions import MalformedPacketError
from bottled_honey.models import Event, TerminationReason

logger = structlog.get_logger()

SIGNATURE_PREFIX = "Terraria"
# PlayerInfo starts with player slot, skin variant and hair before the name
PLAYER_INFO_SKIP = 3
# NetworkText mode for a localization key, and Terraria's "incorrect password" text
NETWORK_TEXT_LOCALIZATION_KEY = 2
INCORRECT_PASSWORD_KEY = "LegacyMultiplayer.1"


class PacketId(IntEnum):
    """Terraria packet ids the honeypot understands"""

    CONNECT_REQUEST = 0x01
    DISCONNECT = 0x02
    CONTINUE_CONNECTING = 0x03
    PLAYER_INFO = 0x04
    REQUEST_PASSWORD = 0x25
    SEND_PASSWORD = 0x26
    CLIENT_UUID = 0x44


class HandshakeState(str, Enum):
    AWAIT_CONNECT_REQUEST = "await_connect_request"
    REQUEST_PASSWORD = "request_password"
    AWAIT_PASSWORD = "await_password"
    AWAIT_PLAYER_INFO = "await_player_info"
    COMPLETED = "completed"
    TERMINATED = "terminated"


TERMINAL_STATES = frozenset({HandshakeState.COMPLETED, HandshakeState.TERMINATED})

# packet ids each waiting state can make progress with
EXPECTED_PACKETS = {
    HandshakeState.AWAIT_CONNECT_REQUEST: frozenset({PacketId.CONNECT_REQUEST}),
    HandshakeState.AWAIT_PASSWORD: frozenset({PacketId.SEND_PASSWORD}),
    HandshakeState.AWAIT_PLAYER_INFO: frozenset({PacketId.PLAYER_INFO, PacketId.CLIENT_UUID}),
}


def continue_connecting_packet(player_slot: int = 0) -> Packet:
    return Packet(PacketId.CONTINUE_CONNECTING, bytes([player_slot, 0]))


def request_password_packet() -> Packet:
    return Packet(PacketId.REQUEST_PASSWORD)


def disconnect_packet(text_key: str = INCORRECT_PASSWORD_KEY) -> Packet:
    return (
        PacketBuilder(PacketId.DISCONNECT)
        .write_byte(NETWORK_TEXT_LOCALIZATION_KEY)
        .write_string(text_key)
        .write_byte(0)  # no substitutions
        .build()
    )


def _packet_name(packet_id: int) -> str:
    try:
        return PacketId(packet_id).name
    except ValueError:
        return f"0x{packet_id:02x}"


def _read_password(payload: bytes) -> str:
    # keep whatever was typed even if the client framed it oddly
    try:
        reader = PacketReader(payload)
        password = reader.read_string()
        if not reader.has_data():
            return password
    except MalformedPacketError:
        pass
    return payload.decode("utf-8", errors="replace")


class HandshakeMachine:
    """
    Per-connection handshake state.

    Args:
        fingerprint: Where captured fields go
        password_decision: Whether this connection gets a password prompt
        reject_password: Disconnect after the password attempt instead of
            letting the client continue
    """

    def __init__(
        self,
        fingerprint: Fingerprint,
        password_decision: bool = False,
        reject_password: bool = False,
    ):
        self.fingerprint = fingerprint
        self.password_decision = password_decision
        self.reject_password = reject_password
        self.state = HandshakeState.AWAIT_CONNECT_REQUEST
        self.history: List[HandshakeState] = [self.state]
        self.reason: Optional[TerminationReason] = None
        self.password_requested = False
        self._log = logger.bind(
            remote_addr=fingerprint.remote_addr,
            remote_port=fingerprint.remote_port,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _enter(self, state: HandshakeState) -> None:
        self.state = state
        self.history.append(state)

    def terminate(self, reason: TerminationReason) -> bool:
        """Move to TERMINATED; a no-op once a terminal state was reached."""
        if self.is_terminal:
            return False
        self.reason = reason
        self._log.info("handshake_terminated", reason=reason.value, state=self.state.value)
        self._enter(HandshakeState.TERMINATED)
        return True

    def accepts(self, packet_id: int) -> bool:
        """
        Whether a packet with this id is worth reading in full.

        The driver checks this right after the frame header so a client that
        opens with an unexpected id is turned away without waiting for a body
        that may never arrive. Once completed, everything is read (and
        ignored, apart from the UUID).
        """
        if self.state is HandshakeState.COMPLETED:
            return True
        return packet_id in EXPECTED_PACKETS.get(self.state, ())

    def handle(self, packet: Packet) -> List[Packet]:
        """
        Apply one client packet and return the packets to send in reply.
        """
        if self.state is HandshakeState.TERMINATED:
            return []

        self.fingerprint.touch()
        reader = PacketReader(packet.payload)

        try:
            if self.state is HandshakeState.AWAIT_CONNECT_REQUEST:
                if packet.packet_id != PacketId.CONNECT_REQUEST:
                    return self._unexpected(packet)
                signature = reader.read_string()
                self.fingerprint.capture("version", signature)
                self._log.debug("connect_request", signature=signature)
                if not signature.startswith(SIGNATURE_PREFIX):
                    self._log.warning("unknown_signature", signature=signature)
                    self.terminate(TerminationReason.UNKNOWN_SIGNATURE)
                    return []
                if self.password_decision:
                    self._enter(HandshakeState.REQUEST_PASSWORD)
                    self.password_requested = True
                    self._enter(HandshakeState.AWAIT_PASSWORD)
                    return [request_password_packet()]
                self._enter(HandshakeState.AWAIT_PLAYER_INFO)
                return [continue_connecting_packet()]

            if self.state is HandshakeState.AWAIT_PASSWORD:
                if packet.packet_id != PacketId.SEND_PASSWORD:
                    return self._unexpected(packet)
                password = _read_password(packet.payload)
                self.fingerprint.capture("password_attempt", password)
                self._log.info("password_received", password=password)
                if self.reject_password:
                    self.terminate(TerminationReason.PASSWORD_REJECTED)
                    return [disconnect_packet()]
                self._enter(HandshakeState.AWAIT_PLAYER_INFO)
                return [continue_connecting_packet()]

            if self.state is HandshakeState.AWAIT_PLAYER_INFO:
                if packet.packet_id == PacketId.CLIENT_UUID:
                    self._capture_uuid(reader)
                    return []
                if packet.packet_id != PacketId.PLAYER_INFO:
                    return self._unexpected(packet)
                reader.read_bytes(PLAYER_INFO_SKIP)
                name = reader.read_string()
                # the rest of PlayerInfo (colours, difficulty...) isn't interesting
                self.fingerprint.capture("player_name", name)
                self._log.info("player_info", player_name=name)
                self._enter(HandshakeState.COMPLETED)
                return []

            # COMPLETED: only still listening for the client's UUID
            if packet.packet_id == PacketId.CLIENT_UUID and self.fingerprint.get("client_uuid") is None:
                self._capture_uuid(reader)
            return []

        except MalformedPacketError as e:
            self._log.warning(
                "malformed_packet",
                packet=_packet_name(packet.packet_id),
                error=e.message,
            )
            if self.state is HandshakeState.COMPLETED:
                return []
            self.terminate(TerminationReason.MALFORMED_PACKET)
            return []

    def _capture_uuid(self, reader: PacketReader) -> None:
        uuid = reader.read_string()
        self.fingerprint.capture("client_uuid", uuid)
        self._log.debug("client_uuid", client_uuid=uuid)

    def _unexpected(self, packet: Packet) -> List[Packet]:
        self._log.warning(
            "unexpected_packet",
            packet=_packet_name(packet.packet_id),
            state=self.state.value,
        )
        self.terminate(TerminationReason.UNEXPECTED_PACKET)
        return []

    def finalize(self) -> Optional[Event]:
        """Freeze the fingerprint; returns None if already finalized."""
        if not self.is_terminal:
            self.terminate(TerminationReason.DISCONNECTED)
        return self.fingerprint.finalize(self.reason, self.password_requested)
