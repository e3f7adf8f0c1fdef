"""
Listener - accepts clients and runs one handshake per connection.

Each accepted stream gets its own ClientConnection (codec, password decision,
state machine and fingerprint). The only things connections share are the
PasswordGate and the telemetry sink, both injected here.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Set

import structlog

from bottled_honey.config import Settings
from bottled_honey.engine.codec import FrameHeader, Packet, PacketCodec
from bottled_honey.engine.fingerprint import Fingerprint
from bottled_honey.engine.handshake import HandshakeMachine, HandshakeState
from bottled_honey.engine.password_gate import PasswordGate
from bottled_honey.exceptions import (
    BindError,
    FrameTooLargeError,
    MalformedFrameError,
    PeerDisconnectedError,
    ProtocolError,
    ReadTimeoutError,
    TransportError,
    TruncatedFrameError,
    WriteTimeoutError,
)
from bottled_honey.models import Event, TerminationReason

logger = structlog.get_logger()


class EventPublisher(Protocol):
    def publish(self, event: Event) -> bool: ...


def termination_reason_for(error: Exception) -> TerminationReason:
    """Map a per-connection exception to the reason recorded on the event."""
    if isinstance(error, FrameTooLargeError):
        return TerminationReason.FRAME_TOO_LARGE
    if isinstance(error, TruncatedFrameError):
        return TerminationReason.TRUNCATED
    if isinstance(error, MalformedFrameError):
        return TerminationReason.MALFORMED_FRAME
    if isinstance(error, ProtocolError):
        return TerminationReason.MALFORMED_PACKET
    if isinstance(error, (ReadTimeoutError, WriteTimeoutError)):
        return TerminationReason.TIMEOUT
    if isinstance(error, PeerDisconnectedError):
        return TerminationReason.DISCONNECTED
    return TerminationReason.IO_ERROR


class ClientConnection:
    """One accepted client and its handshake."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        settings: Settings,
        password_decision: bool,
        sink: EventPublisher,
        shutdown: asyncio.Event,
    ):
        self.writer = writer
        self.settings = settings
        self.sink = sink
        self._shutdown = shutdown

        peer = writer.get_extra_info("peername") or ("unknown", 0)
        self.remote_addr, self.remote_port = str(peer[0]), int(peer[1])

        self.codec = PacketCodec(reader, writer, max_frame_size=settings.max_frame_size)
        self.fingerprint = Fingerprint(self.remote_addr, self.remote_port)
        self.machine = HandshakeMachine(
            self.fingerprint,
            password_decision=password_decision,
            reject_password=settings.reject_password,
        )
        self.event: Optional[Event] = None
        self._log = logger.bind(remote_addr=self.remote_addr, remote_port=self.remote_port)

    def _read_timeout(self) -> float:
        if self.machine.state is HandshakeState.AWAIT_PASSWORD:
            # give a human a little more time to type
            return self.settings.password_timeout_sec
        return self.settings.idle_timeout_sec

    async def run(self) -> Optional[Event]:
        """Drive the handshake to a terminal state, then emit the event."""
        self._log.info("connection_accepted", password_decision=self.machine.password_decision)
        try:
            await self._handshake()
            if self.machine.state is HandshakeState.COMPLETED:
                await self._linger()
        except asyncio.CancelledError:
            self.machine.terminate(TerminationReason.SHUTDOWN)
            raise
        finally:
            self._emit()
            await self._close()
        return self.event

    async def _next_header(self, timeout: float) -> Optional[FrameHeader]:
        """
        Wait for the next frame header, or None once shutdown is signalled.

        Only the wait between frames is interrupted; a frame whose header
        arrived is read to the end.
        """
        read = asyncio.ensure_future(self.codec.read_header(timeout))
        stopping = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({read, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not read.done():
                read.cancel()
        if read.done() and not read.cancelled():
            return read.result()
        return None

    async def _handshake(self) -> None:
        while not self.machine.is_terminal:
            if self._shutdown.is_set():
                self.machine.terminate(TerminationReason.SHUTDOWN)
                return
            timeout = self._read_timeout()
            try:
                header = await self._next_header(timeout)
                if header is None:
                    self.machine.terminate(TerminationReason.SHUTDOWN)
                    return
                if self.machine.accepts(header.packet_id):
                    packet = await self.codec.read_body(header, timeout)
                else:
                    # the body is never read, the packet is refused on its id
                    packet = Packet(header.packet_id)
                for reply in self.machine.handle(packet):
                    await self.codec.write_packet(reply, self.settings.idle_timeout_sec)
            except (ProtocolError, TransportError) as e:
                self._log.info(
                    "connection_error",
                    error=e.message,
                    error_type=type(e).__name__,
                    state=self.machine.state.value,
                )
                self.machine.terminate(termination_reason_for(e))

    async def _linger(self) -> None:
        """Keep a completed connection open briefly to see what else it sends."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.completion_linger_sec
        while not self._shutdown.is_set():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                header = await self._next_header(remaining)
                if header is None:
                    return
                packet = await self.codec.read_body(header, remaining)
            except (ProtocolError, TransportError):
                return
            self.machine.handle(packet)

    def _emit(self) -> None:
        event = self.machine.finalize()
        if event is None:
            return
        self.event = event
        self._log.info(
            "connection_finished",
            outcome=event.outcome.value,
            reason=event.reason.value if event.reason else None,
            version=event.version,
            player_name=event.player_name,
            password_requested=event.password_requested,
        )
        self.sink.publish(event)

    async def _close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            self._log.debug("writer_close_failed", error=str(e), error_type=type(e).__name__)


class Listener:
    """
    Binds the configured address and hands every client a ClientConnection.

    Args:
        settings: Resolved configuration
        password_gate: Shared password decision source
        sink: Where finalized events are published
    """

    def __init__(
        self,
        settings: Settings,
        password_gate: PasswordGate,
        sink: EventPublisher,
    ):
        self.settings = settings
        self.password_gate = password_gate
        self.sink = sink
        self.server: Optional[asyncio.AbstractServer] = None
        self.connections: Set[asyncio.Task] = set()
        self._shutdown = asyncio.Event()
        self._stopped = asyncio.Event()

        # Statistics
        self.accepted = 0
        self.rejected = 0

    @property
    def address(self) -> Optional[tuple]:
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[:2]

    async def start(self) -> None:
        """Bind and start accepting. Raises BindError if the address is unavailable."""
        try:
            self.server = await asyncio.start_server(
                self._on_client, self.settings.host, self.settings.port
            )
        except OSError as e:
            raise BindError(
                f"Failed to bind to {self.settings.address}: {e}",
                details={"address": self.settings.address, "error": str(e)},
            ) from e
        logger.info("server_listening", address=self.address)

    async def serve_forever(self) -> None:
        """Start if needed, then accept until stop() is called."""
        if self.server is None:
            await self.start()
        await self._stopped.wait()

    run = serve_forever

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._shutdown.is_set() or len(self.connections) >= self.settings.max_connections:
            self.rejected += 1
            logger.warning(
                "connection_rejected",
                peer=writer.get_extra_info("peername"),
                active=len(self.connections),
                shutting_down=self._shutdown.is_set(),
            )
            writer.close()
            return

        task = asyncio.current_task()
        self.connections.add(task)
        self.accepted += 1
        try:
            connection = ClientConnection(
                reader,
                writer,
                self.settings,
                password_decision=self.password_gate.decide(self.settings.password_chance),
                sink=self.sink,
                shutdown=self._shutdown,
            )
            await connection.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # never let one client take the accept loop down
            logger.exception("connection_handler_failed", error=str(e))
            writer.close()
        finally:
            self.connections.discard(task)

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """
        Stop accepting and let in-flight connections finish.

        Connections terminate after their current transition; any still
        running after ``drain_timeout`` are cancelled. Every one of them
        still emits its event.
        """
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        if drain_timeout is None:
            drain_timeout = self.settings.drain_timeout_sec

        if self.server is not None:
            self.server.close()

        pending = set(self.connections)
        if pending:
            logger.info("draining_connections", count=len(pending))
            _, still_running = await asyncio.wait(pending, timeout=drain_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        if self.server is not None:
            await self.server.wait_closed()
        self._stopped.set()
        logger.info("server_stopped", accepted=self.accepted, rejected=self.rejected)
