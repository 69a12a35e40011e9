"""
Custom Exceptions Module

This module defines the exception hierarchy for the pipe bridge,
providing specific error types for each way a connection can fail.
"""


class PipeError(Exception):
    """Base exception class for all pipe bridge errors."""

    def __init__(self, message: str = "", stats=None):
        super().__init__(message)
        # Counters accumulated by the run that failed, if any
        self.stats = stats


class ConfigurationError(PipeError):
    """Error in bridge configuration."""
    pass


# =====================================================================================
# Protocol errors
# =====================================================================================

class ProtocolError(PipeError):
    """The peer sent bytes that violate the wire protocol."""
    pass


class ProtocolSyncError(ProtocolError):
    """Handshake could not be decoded (zero update rate or unknown format)."""
    pass


class InvalidFrameLength(ProtocolError):
    """A frame length prefix is outside the accepted bounds."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Invalid frame length: {length} (limit {limit})")
        self.length = length
        self.limit = limit


class InvalidPathLength(ProtocolError):
    """A file path directive is empty, too long or not valid UTF-8."""

    def __init__(self, length: int, message: str = ""):
        super().__init__(message or f"Invalid file path length: {length}")
        self.length = length


# =====================================================================================
# Transport errors
# =====================================================================================

class TransportError(PipeError):
    """Error on the byte-stream transport."""
    pass


class ConnectionClosed(TransportError):
    """The peer closed the stream before a frame header arrived."""
    pass


class ShortRead(TransportError):
    """The peer closed the stream in the middle of a frame payload."""

    def __init__(self, received: int, expected: int):
        super().__init__(f"Short read: {received}/{expected} bytes")
        self.received = received
        self.expected = expected


class EndpointNotFound(TransportError):
    """No server endpoint exists at any of the discovery locations."""
    pass


class ConnectTimeout(TransportError):
    """Connecting to the server endpoint did not complete in time."""
    pass


class LaunchTimeout(TransportError):
    """The server could not (re)create its endpoint in time."""
    pass


class SinkClosed(TransportError):
    """Writing rendered audio downstream failed."""
    pass


# =====================================================================================
# Rendering errors
# =====================================================================================

class RenderError(PipeError):
    """Error reported by or about the external renderer."""
    pass


class RenderStalled(RenderError):
    """The renderer stopped producing audio."""
    pass


class RenderFault(RenderError):
    """The external renderer raised an error."""
    pass


class ConversionError(PipeError):
    """An external probe or format converter failed."""
    pass
