"""
Render Session Module

This module contains the RenderSession class, which wraps one external
rendering job behind two byte queues: bytes in (streamed input, unused in
file mode) and bytes out (rendered PCM in the client's format). Each session
renders on its own thread and belongs to exactly one connection.
"""

import logging
import threading
from enum import Enum, auto
from typing import Optional

import numpy as np

from .exceptions import RenderFault
from .pcm import encode_pcm, match_channels, channel_meters
from .protocol import Handshake, FileMode
from .queues import ByteQueue
from .renderers import ExternalRenderer, RenderRequest, RenderStream

# Set up logging
logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a render session."""
    CREATED = auto()
    RENDERING = auto()
    FINISHED = auto()   # source exhausted, all output pushed
    FAILED = auto()     # the renderer raised
    STOPPED = auto()    # torn down by its connection


class SessionListener:
    """
    Observer for render session events.

    Subclass and override what you need; every method defaults to a no-op.
    Callbacks run on the render thread and must not block.
    """

    def on_rendering_started(self, session: 'RenderSession') -> None:
        pass

    def on_meters(self, meters: np.ndarray) -> None:
        """Per-channel output level in [0, 1], mapped from -50..0 dB FS."""
        pass

    def on_render_fault(self, error: RenderFault) -> None:
        pass


class RenderSession:
    """
    One rendering job bound to one connection.

    The session is created from the decoded handshake. Streaming sessions read
    their source from the input queue; file sessions open the path handed to
    start(). Rendered blocks are fitted to the requested channel count,
    converted to the requested sample format and appended to the output queue.
    The output queue is closed when rendering ends for any reason.
    """

    def __init__(self, handshake: Handshake, renderer: ExternalRenderer,
                 listener: Optional[SessionListener] = None):
        """
        Initialize the render session.

        Args:
            handshake: Decoded handshake of the owning connection
            renderer: External renderer to open the job with
            listener: Optional observer for session events
        """
        self.handshake = handshake
        self.mode = handshake.mode
        self.renderer = renderer
        self.listener = listener or SessionListener()

        # Both boundaries share one condition so waiters can watch both
        self.condition = threading.Condition()
        self.input = ByteQueue(self.condition)
        self.output = ByteQueue(self.condition)

        self.state = SessionState.CREATED
        self.error: Optional[BaseException] = None
        self.path: Optional[str] = None
        self.input_count = 0
        self.output_count = 0
        self.samples_rendered = 0

        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_file_mode(self) -> bool:
        return isinstance(self.mode, FileMode)

    @property
    def finished(self) -> bool:
        """True once the renderer will not produce any more output."""
        return self.output.closed

    @property
    def request(self) -> RenderRequest:
        return RenderRequest(
            output_channels=self.handshake.output_channels,
            bit_depth=int(self.handshake.bit_depth),
            update_rate=self.handshake.absolute_update_rate,
            file_mode=self.is_file_mode,
        )

    def start(self, path: Optional[str] = None) -> None:
        """
        Start the render thread.

        Args:
            path: File to render; required in file mode, ignored otherwise
        """
        if self._thread is not None:
            raise RuntimeError("Render session already started")
        if self.is_file_mode and not path:
            raise ValueError("File mode sessions need a path to render")

        self.path = path
        self.state = SessionState.RENDERING
        self._thread = threading.Thread(target=self._render_loop, name="render-session")
        self._thread.daemon = True
        self._thread.start()

    def feed(self, payload: bytes) -> None:
        """Append one streamed input frame to the input queue."""
        self.input.write(payload)
        self.input_count += 1

    def finish_input(self) -> None:
        """Signal that no more input will arrive; the renderer drains what is left."""
        self.input.close()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Tear the session down; unblocks the render thread if it waits for input."""
        self._stopped = True
        # Closing the input wakes every waiter on the shared condition
        self.input.close()
        self.input.clear()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def wait_for_output(self, size: int, timeout: Optional[float] = None) -> bool:
        """
        Wait until a reply can be built.

        Returns as soon as size bytes are pending, the session has finished
        or been stopped, or the renderer is blocked waiting for more input
        than it has.

        Returns:
            False if the timeout expired first
        """
        return self.output.wait_for(
            lambda: (len(self.output) >= size or self.output.closed or self.input.starved
                     or self._stopped or self.input.closed),
            timeout,
        )

    def raise_if_failed(self) -> None:
        """Re-raise a renderer error on the calling thread as a RenderFault."""
        if self.error is not None:
            raise RenderFault(f"Renderer failed: {self.error}") from self.error

    def _open_source(self):
        if self.is_file_mode:
            return open(self.path, 'rb')
        return self.input

    def _render_loop(self) -> None:
        """Pull blocks from the renderer until the source is exhausted or the session stops."""
        request = self.request
        source = None
        stream: Optional[RenderStream] = None
        warned = False

        try:
            source = self._open_source()
            stream = self.renderer.open(source, request)
            logger.info(f"Rendering started: {stream.channels}ch at {stream.sample_rate}Hz -> "
                        f"{request.output_channels}ch {request.bit_depth}-bit, "
                        f"{request.update_rate} samples per block")
            self.listener.on_rendering_started(self)

            while not self._stopped:
                block = stream.render()
                if block is None:
                    break

                if block.shape[0] > request.output_channels and not warned:
                    logger.warning(f"Renderer produced {block.shape[0]} channels, "
                                   f"folding into {request.output_channels}")
                    warned = True
                block = match_channels(block, request.output_channels)

                self.listener.on_meters(channel_meters(block))
                self.output.write(encode_pcm(block, request.bit_depth))
                self.output_count += 1
                self.samples_rendered += request.update_rate

                # File sources report their length; stop once it is covered
                if (self.is_file_mode and stream.total_samples is not None
                        and self.samples_rendered >= stream.total_samples):
                    break

            self.state = SessionState.STOPPED if self._stopped else SessionState.FINISHED
            logger.info(f"Rendering ended ({self.state.name.lower()}): "
                        f"{self.output_count} blocks, {self.samples_rendered} samples")

        except Exception as e:
            self.error = e
            self.state = SessionState.FAILED
            logger.error(f"Renderer failed after {self.output_count} blocks: {e}")
            self.listener.on_render_fault(RenderFault(str(e)))

        finally:
            if stream is not None:
                stream.close()
            if source is not None and source is not self.input:
                source.close()
            self.output.close()
