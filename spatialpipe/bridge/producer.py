"""
Producer Session Module

This module contains the client side of the pipe. A ProducerSession connects
to the server, negotiates the output format, and then either streams input
chunks in lockstep with the server's replies or hands the server a file path
and drains the rendered output.

Streaming starts with an unpaired burst of input frames: the renderer needs
several blocks before it can produce anything, so waiting for a reply after
the very first frame would deadlock both ends.
"""

import logging
import os
import socket
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Union

from .config import ProducerConfig, candidate_socket_paths
from .exceptions import (
    PipeError, TransportError, EndpointNotFound, ConnectTimeout, ConnectionClosed, RenderStalled, SinkClosed,
)
from .framing import read_frame, write_frame, write_end_of_stream, write_path_directive
from .protocol import Handshake, write_handshake

# Set up logging
logger = logging.getLogger(__name__)

Source = Union[BinaryIO, Iterable[bytes]]
Sink = Union[BinaryIO, Callable[[bytes], object]]


class ProducerState(Enum):
    """Protocol states of a producer run."""
    IDLE = auto()
    CONNECTING = auto()
    HANDSHAKE_SENT = auto()
    STREAMING = auto()
    FILE_WAIT = auto()
    DRAINING = auto()
    CLOSED = auto()


@dataclass
class ProducerStats:
    """Counters accumulated during a run, attached to errors for diagnostics."""
    chunks_in: int = 0      # input frames sent
    bytes_in: int = 0
    replies: int = 0        # lockstep replies read, keepalives included
    keepalives: int = 0
    chunks_out: int = 0     # non-empty frames forwarded to the sink
    bytes_out: int = 0


@dataclass(frozen=True)
class Completed:
    """Successful outcome of a producer run."""
    bytes_out: int
    chunks_out: int
    chunks_in: int = 0


def discover_endpoint(configured: Optional[str] = None) -> str:
    """
    Find the server's socket.

    Args:
        configured: Explicitly configured socket path, checked after the environment override

    Returns:
        Path of the first candidate that exists

    Raises:
        EndpointNotFound: If no candidate exists
    """
    candidates = candidate_socket_paths(configured)
    for path in candidates:
        if os.path.exists(path):
            return path
    raise EndpointNotFound(f"Pipe socket not found (tried {', '.join(candidates)}). Is the server running?")


def connect_endpoint(path: str, timeout: float, retry_interval: float = 0.05) -> socket.socket:
    """
    Connect to the server socket.

    The server accepts one client at a time, so a refused or missing socket is
    retried until the timeout expires.

    Raises:
        ConnectTimeout: If no connection could be made within timeout seconds
    """
    deadline = time.monotonic() + timeout
    last_error: Optional[OSError] = None
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ConnectTimeout(f"Could not connect to {path} within {timeout}s: {last_error}")

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(remaining)
        try:
            sock.connect(path)
        except socket.timeout as e:
            sock.close()
            raise ConnectTimeout(f"Connecting to {path} timed out after {timeout}s") from e
        except (ConnectionRefusedError, FileNotFoundError) as e:
            sock.close()
            last_error = e
            time.sleep(min(retry_interval, max(remaining, 0)))
            continue
        except OSError as e:
            sock.close()
            raise TransportError(f"Cannot connect to {path}: {e}") from e
        sock.settimeout(None)
        return sock


def _sink_writer(sink: Sink) -> Callable[[bytes], None]:
    def write(data: bytes) -> None:
        try:
            if callable(sink):
                sink(data)
                return
            sink.write(data)
            # Downstream may be a pipe that only sees flushed data
            if hasattr(sink, 'flush'):
                sink.flush()
        except OSError as e:
            raise SinkClosed(f"Writing rendered audio failed: {e}") from e

    return write


class ProducerSession:
    """
    Client side of the pipe.

    One run() drives one connection from handshake to the last frame and then
    closes it. The session is sequential: every protocol step waits for the
    previous one.
    """

    def __init__(self, config: Optional[ProducerConfig] = None):
        """
        Initialize the producer session.

        Args:
            config: Producer configuration
        """
        self.config = config or ProducerConfig()
        self.state = ProducerState.IDLE
        self.stats = ProducerStats()
        self.pending_zero_replies = 0

    def _set_state(self, state: ProducerState) -> None:
        logger.debug(f"Producer state: {self.state.name} -> {state.name}")
        self.state = state

    def run(self, source: Optional[Source] = None, sink: Optional[Sink] = None,
            path: Optional[str] = None, sock: Optional[socket.socket] = None) -> Completed:
        """
        Run one session to completion.

        Args:
            source: Readable binary stream or iterable of byte chunks (streaming mode)
            sink: Writable binary stream or callable receiving rendered bytes
            path: File for the server to open directly (file mode); overrides source
            sock: Already connected socket; discovered and connected if None

        Returns:
            Completed with the output counters

        Raises:
            PipeError: The specific failure, with the accumulated counters in .stats
        """
        if sink is None:
            raise ValueError("A sink for the rendered audio is required")
        if source is None and path is None:
            raise ValueError("Either a source or a path is required")

        self.stats = ProducerStats()
        self.pending_zero_replies = 0
        write = _sink_writer(sink)

        try:
            if sock is None:
                self._set_state(ProducerState.CONNECTING)
                endpoint = discover_endpoint(self.config.socket_path)
                logger.info(f"Found pipe at: {endpoint}")
                sock = connect_endpoint(endpoint, self.config.connect_timeout,
                                        self.config.connect_retry_interval)
                logger.info("Connected to pipe")

            rfile = sock.makefile('rb')
            wfile = sock.makefile('wb')
            try:
                if path is not None:
                    self._run_file(path, rfile, wfile, write)
                else:
                    self._run_streaming(source, rfile, wfile, write)
            finally:
                rfile.close()
                try:
                    wfile.close()
                except OSError:
                    # Server already gone; nothing left to flush to
                    pass

        except PipeError as e:
            e.stats = self.stats
            logger.error(f"{type(e).__name__}: {e} (sent {self.stats.chunks_in} chunks, "
                         f"received {self.stats.chunks_out} chunks / {self.stats.bytes_out} bytes)")
            raise

        except OSError as e:
            error = TransportError(f"Transport failed: {e}", stats=self.stats)
            logger.error(f"{type(error).__name__}: {error} (sent {self.stats.chunks_in} chunks, "
                         f"received {self.stats.chunks_out} chunks / {self.stats.bytes_out} bytes)")
            raise error from e

        finally:
            if sock is not None:
                sock.close()
            self._set_state(ProducerState.CLOSED)

        logger.info(f"Processed {self.stats.chunks_in} input chunks, {self.stats.chunks_out} PCM chunks "
                    f"({self.stats.bytes_out} bytes)")
        return Completed(self.stats.bytes_out, self.stats.chunks_out, self.stats.chunks_in)

    def _handshake(self, file_mode: bool) -> Handshake:
        build = Handshake.file if file_mode else Handshake.streaming
        return build(self.config.bit_depth, self.config.mandatory_frames,
                     self.config.output_channels, self.config.update_rate)

    def _run_file(self, path: str, rfile: BinaryIO, wfile: BinaryIO,
                  write: Callable[[bytes], None]) -> None:
        """Send the path and forward frames until the sentinel."""
        handshake = self._handshake(file_mode=True)
        write_handshake(wfile, handshake)
        self._set_state(ProducerState.HANDSHAKE_SENT)
        logger.info(f"Handshake sent (file mode): {self.config.output_channels}ch, "
                    f"{self.config.bit_depth}-bit, update rate {handshake.update_rate}")

        self._set_state(ProducerState.FILE_WAIT)
        full_path = os.path.abspath(path)
        write_path_directive(wfile, full_path)
        logger.info(f"Sent file path: {full_path}")

        self._set_state(ProducerState.DRAINING)
        while True:
            payload = read_frame(rfile)
            if payload is None:
                logger.info(f"End of stream after {self.stats.bytes_out} bytes in {self.stats.chunks_out} chunks")
                return
            self._forward(payload, write)

    def _chunks(self, source: Source) -> Iterator[bytes]:
        size = self.config.chunk_size
        if hasattr(source, 'read'):
            # read1 returns what a pipe has instead of waiting for a full chunk
            read = getattr(source, 'read1', source.read)
            while True:
                data = read(size)
                if not data:
                    return
                yield data
        else:
            for data in source:
                for start in range(0, len(data), size):
                    yield data[start:start + size]

    def _run_streaming(self, source: Source, rfile: BinaryIO, wfile: BinaryIO,
                       write: Callable[[bytes], None]) -> None:
        """Send input in lockstep with the server's replies, then drain."""
        write_handshake(wfile, self._handshake(file_mode=False))
        self._set_state(ProducerState.HANDSHAKE_SENT)
        logger.info(f"Handshake sent (streaming mode): {self.config.output_channels}ch, "
                    f"{self.config.bit_depth}-bit, update rate {self.config.update_rate}")

        self._set_state(ProducerState.STREAMING)
        for chunk in self._chunks(source):
            if self.stats.chunks_in == 0:
                logger.info(f"First input chunk: {len(chunk)} bytes")
            write_frame(wfile, chunk)
            self.stats.chunks_in += 1
            self.stats.bytes_in += len(chunk)

            # Lockstep only after the initial burst
            if self.stats.chunks_in >= self.config.initial_burst:
                self._receive_reply(rfile, write)

        logger.info(f"Source exhausted after {self.stats.chunks_in} chunks")
        self._set_state(ProducerState.DRAINING)
        write_end_of_stream(wfile)

        try:
            outstanding = self.stats.chunks_in - self.stats.replies
            for _ in range(outstanding):
                self._receive_reply(rfile, write, draining=True)

            while True:
                payload = read_frame(rfile)
                if payload is None:
                    break
                self._forward(payload, write)
        except ConnectionClosed:
            logger.info("Server closed connection")

    def _receive_reply(self, rfile: BinaryIO, write: Callable[[bytes], None],
                       draining: bool = False) -> None:
        """Read one lockstep reply; empty replies are keepalives."""
        payload = read_frame(rfile)
        self.stats.replies += 1

        if payload is None:
            self.stats.keepalives += 1
            self.pending_zero_replies += 1
            if not draining and self.pending_zero_replies > self.config.max_idle_replies:
                raise RenderStalled(f"Gave up after {self.config.max_idle_replies} replies with no PCM")
            return

        if self.stats.chunks_out == 0:
            logger.info(f"First PCM chunk after {self.stats.chunks_in} input chunks")
        self.pending_zero_replies = 0
        self._forward(payload, write)

    def _forward(self, payload: bytes, write: Callable[[bytes], None]) -> None:
        write(payload)
        self.stats.chunks_out += 1
        self.stats.bytes_out += len(payload)
        if self.stats.chunks_out % 100 == 0:
            logger.debug(f"Progress: {self.stats.chunks_out} chunks, {self.stats.bytes_out} bytes")
