"""
Spatial Audio Pipe Bridge Package

A byte-stream bridge between an audio producer (a media player or decoder)
and an external spatial-audio renderer, carrying a small length-prefixed
protocol over a local Unix socket.
"""

from .config import BridgeConfig, ProducerConfig, ServerConfig, RendererConfig
from .exceptions import (
    PipeError, ProtocolError, ProtocolSyncError, InvalidFrameLength, InvalidPathLength,
    TransportError, ConnectionClosed, ShortRead, EndpointNotFound, ConnectTimeout, LaunchTimeout, SinkClosed,
    RenderError, RenderStalled, RenderFault, ConversionError,
)
from .protocol import Handshake, BitDepth, StreamingMode, FileMode
from .framing import read_frame, write_frame, write_end_of_stream, read_path_directive, write_path_directive
from .session import RenderSession, SessionListener
from .pump import OutputPump
from .watchdog import ConnectionWatchdog, WatchdogListener
from .producer import ProducerSession, Completed
from .renderers import ExternalRenderer, RenderStream, RenderRequest, ChannelMapRenderer

__version__ = '0.1.0'
