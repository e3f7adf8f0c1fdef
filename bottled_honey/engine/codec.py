"""
Packet Codec - Frames the Terraria byte stream into packets and back.

Wire format of one frame:

    +----------------+-----------+---------------------+
    | length (u16le) | id (u8)   | payload             |
    +----------------+-----------+---------------------+

``length`` counts the whole frame, the two length bytes included, so the
smallest valid frame is 3 bytes and the payload is ``length - 3`` bytes.

The codec only validates framing. What a packet means is decided by the
handshake state machine, which uses PacketReader/PacketBuilder to decode and
build payloads (.NET BinaryReader/BinaryWriter conventions).
"""
from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import Optional

import structlog

from bottled_honey.exceptions import (
    CodecIOError,
    FrameTooLargeError,
    MalformedFrameError,
    MalformedPacketError,
    PeerDisconnectedError,
    ReadTimeoutError,
    TruncatedFrameError,
    WriteTimeoutError,
)

logger = structlog.get_logger()

LENGTH_FIELD_SIZE = 2
HEADER_SIZE = LENGTH_FIELD_SIZE + 1
MAX_WIRE_LENGTH = 0xFFFF

# probably still too large for any handshake packet, but it's not much
DEFAULT_MAX_FRAME_SIZE = 5 * 1024

_LENGTH = struct.Struct("<H")
_HEADER = struct.Struct("<HB")


@dataclass(frozen=True)
class Packet:
    """A single framed protocol message."""

    packet_id: int
    payload: bytes = b""

    def __post_init__(self):
        if not 0 <= self.packet_id <= 0xFF:
            raise ValueError(f"packet id out of range: {self.packet_id}")

    @property
    def frame_length(self) -> int:
        return HEADER_SIZE + len(self.payload)


@dataclass(frozen=True)
class FrameHeader:
    """Length and id of a frame whose payload hasn't been read yet."""

    length: int
    packet_id: int

    @property
    def payload_size(self) -> int:
        return self.length - HEADER_SIZE


def encode_packet(packet: Packet) -> bytes:
    """Serialize a packet into one frame."""
    length = packet.frame_length
    if length > MAX_WIRE_LENGTH:
        raise FrameTooLargeError(
            f"Packet 0x{packet.packet_id:02x} does not fit in a frame",
            details={"length": length},
        )
    return _HEADER.pack(length, packet.packet_id) + packet.payload


def check_frame_length(length: int, max_frame_size: int) -> None:
    """Reject declared frame lengths that can't belong to a valid packet."""
    if length < HEADER_SIZE:
        raise MalformedFrameError(
            f"Invalid frame length {length}",
            details={"length": length, "minimum": HEADER_SIZE},
        )
    if length > max_frame_size:
        raise FrameTooLargeError(
            f"Frame length {length} exceeds maximum {max_frame_size}",
            details={"length": length, "maximum": max_frame_size},
        )


def decode_packet(frame: bytes, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE) -> Packet:
    """Parse exactly one complete frame."""
    if len(frame) < LENGTH_FIELD_SIZE:
        raise TruncatedFrameError("Frame shorter than its length field")
    (length,) = _LENGTH.unpack_from(frame)
    check_frame_length(length, max_frame_size)
    if len(frame) < length:
        raise TruncatedFrameError(
            "Frame shorter than its declared length",
            details={"length": length, "received": len(frame)},
        )
    if len(frame) > length:
        raise MalformedFrameError(
            "Trailing bytes after frame",
            details={"length": length, "received": len(frame)},
        )
    return Packet(frame[LENGTH_FIELD_SIZE], bytes(frame[HEADER_SIZE:]))


class PacketCodec:
    """
    Reads and writes packets on one client stream.

    Every read and write is bounded by a caller supplied deadline so a peer
    that goes quiet can't hold the connection open.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    ):
        self._reader = reader
        self._writer = writer
        self.max_frame_size = max_frame_size

    async def read_packet(self, timeout: float) -> Packet:
        """
        Read one complete packet.

        Raises:
            ReadTimeoutError: No complete frame within ``timeout`` seconds
            PeerDisconnectedError: Stream closed on a frame boundary
            TruncatedFrameError: Stream closed mid-frame
            MalformedFrameError / FrameTooLargeError: Bad length field
            CodecIOError: Socket error
        """
        return await self._with_deadline(self._read_frame(), timeout)

    async def read_header(self, timeout: float) -> FrameHeader:
        """
        Read only the length and id of the next frame.

        Lets the caller look at the packet id before committing to wait for
        the body. Raises the same errors as ``read_packet``.
        """
        return await self._with_deadline(self._read_header(), timeout)

    async def read_body(self, header: FrameHeader, timeout: float) -> Packet:
        """Read the payload belonging to a header returned by ``read_header``."""
        return await self._with_deadline(self._read_body(header), timeout)

    async def _with_deadline(self, coro, timeout: float):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise ReadTimeoutError(
                "No packet received before deadline",
                details={"timeout_sec": timeout},
            )

    async def _read_frame(self) -> Packet:
        header = await self._read_header()
        return await self._read_body(header)

    async def _read_header(self) -> FrameHeader:
        try:
            raw = await self._reader.readexactly(LENGTH_FIELD_SIZE)
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                raise PeerDisconnectedError("Connection closed by peer")
            raise TruncatedFrameError(
                "Connection closed inside frame header",
                details={"received": len(e.partial)},
            )
        except OSError as e:
            raise CodecIOError(f"Read failed: {e}", details={"error": str(e)})

        (length,) = _LENGTH.unpack(raw)
        check_frame_length(length, self.max_frame_size)

        try:
            packet_id = (await self._reader.readexactly(1))[0]
        except asyncio.IncompleteReadError:
            raise TruncatedFrameError(
                "Connection closed inside frame header",
                details={"length": length, "received": LENGTH_FIELD_SIZE},
            )
        except OSError as e:
            raise CodecIOError(f"Read failed: {e}", details={"error": str(e)})
        return FrameHeader(length, packet_id)

    async def _read_body(self, header: FrameHeader) -> Packet:
        try:
            payload = await self._reader.readexactly(header.payload_size)
        except asyncio.IncompleteReadError as e:
            raise TruncatedFrameError(
                "Connection closed inside frame body",
                details={"length": header.length, "received": HEADER_SIZE + len(e.partial)},
            )
        except OSError as e:
            raise CodecIOError(f"Read failed: {e}", details={"error": str(e)})

        packet = Packet(header.packet_id, bytes(payload))
        logger.debug("packet_received", packet_id=f"0x{packet.packet_id:02x}", payload=packet.payload.hex())
        return packet

    async def write_packet(self, packet: Packet, timeout: float) -> None:
        """Write one packet as a single frame and wait for it to drain."""
        data = encode_packet(packet)
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            raise WriteTimeoutError(
                "Peer did not accept data before deadline",
                details={"timeout_sec": timeout, "data_size": len(data)},
            )
        except OSError as e:
            raise CodecIOError(
                f"Write failed: {e}",
                details={"error": str(e), "data_size": len(data)},
            )
        logger.debug("packet_sent", packet_id=f"0x{packet.packet_id:02x}", payload=packet.payload.hex())


class PacketReader:
    """Sequential reader over a packet payload."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def read_byte(self) -> int:
        if self.offset >= len(self.data):
            raise MalformedPacketError("Payload ended while reading byte")
        value = self.data[self.offset]
        self.offset += 1
        return value

    def read_bytes(self, count: int) -> bytes:
        if self.offset + count > len(self.data):
            raise MalformedPacketError(
                f"Payload ended while reading {count} bytes",
                details={"offset": self.offset, "size": len(self.data)},
            )
        value = self.data[self.offset:self.offset + count]
        self.offset += count
        return bytes(value)

    def read_7bit_int(self) -> int:
        """Read a .NET 7-bit encoded integer (at most 5 bytes)."""
        result = 0
        for shift in range(0, 35, 7):
            byte = self.read_byte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
        raise MalformedPacketError("7-bit encoded integer is too long")

    def read_string(self) -> str:
        """Read a length prefixed string; invalid UTF-8 is replaced, not rejected."""
        length = self.read_7bit_int()
        return self.read_bytes(length).decode("utf-8", errors="replace")

    def has_data(self) -> bool:
        return self.offset < len(self.data)


class PacketBuilder:
    def __init__(self, packet_id: int):
        self.packet_id = packet_id
        self.buffer = bytearray()

    def write_byte(self, value: int) -> "PacketBuilder":
        self.buffer.append(value & 0xFF)
        return self

    def write_bytes(self, data: bytes) -> "PacketBuilder":
        self.buffer.extend(data)
        return self

    def write_7bit_int(self, value: int) -> "PacketBuilder":
        while value >= 0x80:
            self.buffer.append((value & 0x7F) | 0x80)
            value >>= 7
        self.buffer.append(value)
        return self

    def write_string(self, value: str) -> "PacketBuilder":
        encoded = value.encode("utf-8")
        self.write_7bit_int(len(encoded))
        self.buffer.extend(encoded)
        return self

    def build(self, max_frame_size: Optional[int] = None) -> Packet:
        packet = Packet(self.packet_id, bytes(self.buffer))
        if max_frame_size is not None and packet.frame_length > max_frame_size:
            raise FrameTooLargeError(
                "Built packet exceeds maximum frame size",
                details={"length": packet.frame_length, "maximum": max_frame_size},
            )
        return packet
