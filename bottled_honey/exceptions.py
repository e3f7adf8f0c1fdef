"""
Custom Exception Hierarchy for the honeypot

Provides structured exceptions for connection handling and startup.
All custom exceptions inherit from HoneypotError base class.
"""
from typing import Optional


class HoneypotError(Exception):
    """
    Base exception for all honeypot-specific errors.

    All custom exceptions should inherit from this class to allow
    catching all honeypot errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Startup Errors

class ConfigurationError(HoneypotError):
    """
    Invalid configuration or settings.

    Raised when configuration validation fails at startup.
    Examples: password chance outside 0.0-1.0, malformed bind address.
    """
    pass


class BindError(HoneypotError):
    """
    Listener could not bind to the configured address.

    Fatal: no connections are ever accepted.
    """
    pass


# Protocol and Framing Errors

class ProtocolError(HoneypotError):
    """
    Protocol-related errors while reading client traffic.

    Base class for all framing and packet decoding errors. These terminate
    the offending connection and nothing else.
    """
    pass


class MalformedFrameError(ProtocolError):
    """Declared frame length is smaller than the frame header."""
    pass


class FrameTooLargeError(ProtocolError):
    """Declared frame length exceeds the configured maximum."""
    pass


class TruncatedFrameError(ProtocolError):
    """Stream closed part way through a frame."""
    pass


class MalformedPacketError(ProtocolError):
    """Packet payload could not be decoded for its identifier."""
    pass


# Network and Transport Errors

class TransportError(HoneypotError):
    """
    Network transport failures.

    Base class for all per-connection network communication errors.
    """
    pass


class CodecIOError(TransportError):
    """Underlying socket read or write failed."""
    pass


class PeerDisconnectedError(TransportError):
    """Peer closed the connection cleanly between frames."""
    pass


class ReadTimeoutError(TransportError):
    """No complete frame arrived before the read deadline."""
    pass


class WriteTimeoutError(TransportError):
    """Peer did not accept our data before the write deadline."""
    pass


# Telemetry Errors

class TelemetryExportError(HoneypotError):
    """
    Exporting an event to the telemetry backend failed.

    Logged by the telemetry sink, never propagated to connection handling.
    """
    pass
