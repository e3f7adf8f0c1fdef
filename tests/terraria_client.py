"""
Minimal Terraria client packets for exercising the honeypot.
"""
import asyncio
from typing import Tuple

from bottled_honey.engine.codec import Packet, PacketBuilder, encode_packet
from bottled_honey.engine.handshake import PacketId


def connect_request(signature: str = "Terraria279") -> Packet:
    return PacketBuilder(PacketId.CONNECT_REQUEST).write_string(signature).build()


def send_password(password: str) -> Packet:
    return PacketBuilder(PacketId.SEND_PASSWORD).write_string(password).build()


def player_info(name: str = "Guide") -> Packet:
    return (
        PacketBuilder(PacketId.PLAYER_INFO)
        .write_bytes(b"\x00\x04\x11")  # slot, skin variant, hair
        .write_string(name)
        .write_bytes(b"\x00\x00\x00\xff\x10\x20")  # colours etc, ignored
        .build()
    )


def client_uuid(uuid: str = "01234567-89ab-cdef-0123-456789abcdef") -> Packet:
    return PacketBuilder(PacketId.CLIENT_UUID).write_string(uuid).build()


async def open_client(address: Tuple[str, int]) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(address[0], address[1])


async def send(writer: asyncio.StreamWriter, packet: Packet) -> None:
    writer.write(encode_packet(packet))
    await writer.drain()
