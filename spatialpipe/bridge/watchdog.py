"""
Connection Watchdog Module

This module contains the server side of the pipe: a watchdog that keeps a
single Unix socket endpoint alive, serves one client connection at a time,
and recreates the endpoint after every connection closes.

Each connection gets its own RenderSession. Streaming clients are answered
in lockstep, one reply frame per input frame; file-mode clients get the
whole rendered file through the OutputPump.
"""

import fcntl
import logging
import os
import socket
import threading
import time
from typing import Optional, BinaryIO, TextIO

from .config import ServerConfig, MAX_CHUNK_BYTES
from .exceptions import PipeError, ConnectionClosed, LaunchTimeout, RenderStalled
from .framing import read_frame, write_frame, read_path_directive
from .protocol import read_handshake
from .pump import OutputPump
from .renderers import ExternalRenderer
from .session import RenderSession, SessionListener

# Set up logging
logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class WatchdogListener(SessionListener):
    """
    Observer for watchdog and session events.

    Every method defaults to a no-op. Callbacks run on the watchdog or render
    thread and must not block.
    """

    def on_status_changed(self, watchdog: 'ConnectionWatchdog') -> None:
        """Either the running or the connected flag changed."""
        pass

    def on_connection_error(self, error: Exception) -> None:
        """A connection ended with an error; the watchdog keeps serving."""
        pass

    def on_launch_failed(self, error: LaunchTimeout) -> None:
        """The endpoint could not be created; the watchdog has stopped."""
        pass


class PipeEndpoint:
    """
    The named socket owned by a watchdog, and its current connection.

    Only one client is served at a time: the listening socket is closed as
    soon as a connection is accepted, so other clients are refused until the
    endpoint is released and recreated.

    Ownership of the path is an advisory lock on a sibling ".lock" file,
    held from the first create() until unlock(). The holder treats any
    socket file at the path as stale; other servers never connect to it.
    """

    def __init__(self, path: str):
        self.path = path
        self.lock_path = path + LOCK_SUFFIX
        self.server: Optional[socket.socket] = None
        self.connection: Optional[socket.socket] = None
        self._lock_file: Optional[TextIO] = None

    @property
    def locked(self) -> bool:
        return self._lock_file is not None

    def create(self, launch_timeout: float, retry_interval: float = 0.05) -> None:
        """
        Bind and listen on the socket path, retrying until launch_timeout.

        Raises:
            LaunchTimeout: If the endpoint could not be created in time
        """
        directory = os.path.dirname(self.path)
        try_until = time.monotonic() + launch_timeout
        last_error: Optional[OSError] = None
        while time.monotonic() < try_until:
            try:
                if directory:
                    os.makedirs(directory, exist_ok=True)
                self._lock()
                if os.path.exists(self.path):
                    # Left behind by a server that no longer holds the lock
                    os.remove(self.path)
                server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    server.bind(self.path)
                    server.listen(1)
                except OSError:
                    server.close()
                    raise
                self.server = server
                return
            except OSError as e:
                last_error = e
                time.sleep(retry_interval)

        raise LaunchTimeout(f"Could not create endpoint {self.path} within {launch_timeout}s: {last_error}")

    def _lock(self) -> None:
        if self._lock_file is not None:
            return

        lock_file = open(self.lock_path, 'a')
        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            lock_file.close()
            raise OSError(e.errno, f"Another server owns {self.path}") from e
        self._lock_file = lock_file

    def unlock(self) -> None:
        """Give up ownership of the path; the lock file itself stays."""
        if self._lock_file is not None:
            self._lock_file.close()
            self._lock_file = None

    def accept(self, poll_interval: float, keep_waiting) -> Optional[socket.socket]:
        """
        Wait for one client.

        Args:
            poll_interval: Seconds between checks of keep_waiting()
            keep_waiting: Callable; waiting stops once it returns False

        Returns:
            The connected socket, or None if waiting was abandoned
        """
        self.server.settimeout(poll_interval)
        while keep_waiting():
            try:
                connection, _ = self.server.accept()
            except socket.timeout:
                continue
            connection.settimeout(None)
            self.connection = connection
            # Refuse everyone else until this connection is done
            self.server.close()
            self.server = None
            return connection
        return None

    def shutdown_connection(self) -> None:
        """Unblock any pending read or write on the current connection."""
        connection = self.connection
        if connection is not None:
            try:
                connection.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Already disconnected
                pass

    def peer_closed(self) -> bool:
        """True if the client has hung up; unread input is left in place."""
        connection = self.connection
        if connection is None:
            return True
        try:
            data = connection.recv(1, socket.MSG_PEEK | socket.MSG_DONTWAIT)
        except BlockingIOError:
            return False
        except OSError:
            return True
        return not data

    def release(self) -> None:
        """Close the connection and the listening socket and remove the socket file."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        if self.server is not None:
            self.server.close()
            self.server = None
        if os.path.exists(self.path):
            os.remove(self.path)


class ConnectionWatchdog:
    """
    Keeps the pipe endpoint alive and serves one client at a time.

    Use start() to launch the watchdog thread and stop() to shut it down.
    Per-connection failures are logged and reported to the listener; the
    watchdog then waits for the next client. Only a LaunchTimeout stops it.
    """

    def __init__(self, renderer: ExternalRenderer, config: Optional[ServerConfig] = None,
                 listener: Optional[WatchdogListener] = None):
        """
        Initialize the watchdog.

        Args:
            renderer: External renderer used for every session
            config: Server configuration
            listener: Optional observer for status changes and errors
        """
        self.renderer = renderer
        self.config = config or ServerConfig()
        self.listener = listener or WatchdogListener()
        self.endpoint = PipeEndpoint(self.config.socket_path)

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._listening = threading.Event()
        self._running = False
        self._connected = False

        self.session: Optional[RenderSession] = None
        self._pump: Optional[OutputPump] = None

        # Diagnostics
        self.connections_served = 0
        self.connections_failed = 0
        self.last_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self._running

    @running.setter
    def running(self, value: bool) -> None:
        self._running = value
        self.listener.on_status_changed(self)

    @property
    def connected(self) -> bool:
        return self._connected

    @connected.setter
    def connected(self, value: bool) -> None:
        self._connected = value
        self.listener.on_status_changed(self)

    def start(self) -> None:
        """
        Start the watchdog thread.

        Raises:
            RuntimeError: If the watchdog is already running
        """
        with self._lock:
            if self._running:
                raise RuntimeError("Watchdog is already running")
            self.running = True
            self._thread = threading.Thread(target=self._run, name="pipe-watchdog")
            self._thread.daemon = True
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop recreating the endpoint and close the current connection, if any."""
        with self._lock:
            self.running = False
            if self._pump is not None:
                self._pump.abort()
            if self.session is not None:
                self.session.stop()
            self.endpoint.shutdown_connection()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._listening.clear()

    def wait_until_listening(self, timeout: Optional[float] = None) -> bool:
        """Block until the endpoint accepts connections."""
        return self._listening.wait(timeout)

    def _run(self) -> None:
        """Watchdog loop: (re)create the endpoint, serve one connection, repeat."""
        try:
            while self._running:
                try:
                    self.endpoint.create(self.config.launch_timeout)
                except LaunchTimeout as e:
                    logger.error(f"{e}; restart the server")
                    self.last_error = e
                    self.running = False
                    self.listener.on_launch_failed(e)
                    return

                logger.info(f"Listening on {self.endpoint.path}")
                self._listening.set()
                try:
                    connection = self.endpoint.accept(self.config.accept_poll_interval, lambda: self._running)
                    self._listening.clear()
                    if connection is not None:
                        self._serve(connection)
                finally:
                    self._listening.clear()
                    self.endpoint.release()
        finally:
            self.endpoint.unlock()

        logger.info("Watchdog stopped")

    def _serve(self, connection: socket.socket) -> None:
        """Run one connection to completion; never raises."""
        self.connected = True
        rfile = connection.makefile('rb')
        wfile = connection.makefile('wb')
        session = None
        try:
            if not rfile.peek(1):
                logger.info("Client closed before sending a handshake")
                return

            handshake = read_handshake(rfile)
            logger.info(f"Client connected: {handshake.mode}, {int(handshake.bit_depth)}-bit, "
                        f"{handshake.output_channels}ch, {handshake.mandatory_frames} mandatory frames")

            session = RenderSession(handshake, self.renderer, self.listener)
            self.session = session
            if session.is_file_mode:
                self._handle_file(session, rfile, wfile)
            else:
                self._handle_streaming(session, rfile, wfile)
            self.connections_served += 1

        except Exception as e:  # Content type change or client/stream closed
            self.connections_failed += 1
            self.last_error = e
            if isinstance(e, PipeError):
                logger.warning(f"Connection ended with {type(e).__name__}: {e}")
            else:
                logger.exception(f"Connection ended with unexpected error: {e}")
            self.listener.on_connection_error(e)

        finally:
            if session is not None:
                session.stop()
                session.join(0.5)
            self.session = None
            self._pump = None
            for f in (rfile, wfile):
                try:
                    f.close()
                except OSError:
                    # Unflushed bytes to a vanished client
                    pass
            self.connected = False

    def _handle_streaming(self, session: RenderSession, rfile: BinaryIO, wfile: BinaryIO) -> None:
        """Answer every input frame with exactly one reply frame."""
        session.start()
        mandatory = session.handshake.mandatory_bytes

        while self._running:
            try:
                payload = read_frame(rfile)
            except ConnectionClosed:
                logger.info(f"Client disconnected after {session.input_count} input frames")
                return

            if payload is None:
                # Client's end of input: flush what is still rendering
                logger.info(f"End of input after {session.input_count} frames")
                session.finish_input()
                self._pump_output(session, wfile)
                return

            session.feed(payload)
            write_frame(wfile, self._next_reply(session, mandatory))

    def _next_reply(self, session: RenderSession, mandatory: int) -> bytes:
        """
        Build the reply for the latest input frame.

        Waits until mandatory bytes are rendered. If the renderer needs more
        input first, the reply is an empty keepalive. The wait is abandoned
        when the client hangs up or the watchdog stops.
        """
        timeout = self.config.render_wait_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while not session.wait_for_output(mandatory, self.config.liveness_interval):
            if not self._running or session.stopped:
                raise ConnectionClosed("Watchdog stopped while waiting for the renderer")
            if self.endpoint.peer_closed():
                raise ConnectionClosed("Client disconnected while waiting for the renderer")
            if deadline is not None and time.monotonic() >= deadline:
                raise RenderStalled(f"Renderer produced no output within {timeout}s")

        if session.stopped:
            raise ConnectionClosed("Watchdog stopped while waiting for the renderer")
        session.raise_if_failed()

        available = len(session.output)
        if mandatory == 0:
            return session.output.take(min(available, MAX_CHUNK_BYTES))
        if available >= mandatory:
            return session.output.take(min(mandatory, MAX_CHUNK_BYTES))
        if session.finished:
            return session.output.take(available)
        return b''

    def _handle_file(self, session: RenderSession, rfile: BinaryIO, wfile: BinaryIO) -> None:
        """Render the file named by the client and pump all of it back."""
        path = read_path_directive(rfile)
        logger.info(f"File mode: {path}")
        session.start(path)
        self._pump_output(session, wfile)

    def _pump_output(self, session: RenderSession, wfile: BinaryIO) -> None:
        pump = OutputPump(session, wfile,
                          max_slice_bytes=self.config.max_slice_bytes,
                          slice_delay=self.config.slice_delay,
                          poll_interval=self.config.pump_poll_interval,
                          alive=lambda: not self.endpoint.peer_closed())
        with self._lock:
            self._pump = pump
            if not self._running:
                pump.abort()
        pump.run()
