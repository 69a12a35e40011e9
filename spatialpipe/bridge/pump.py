"""
Output Pump Module

This module drains a render session's output queue onto the transport in
bounded frames until rendering is complete, then terminates the stream with
a single sentinel frame.

Backpressure is a fixed policy: frames are capped at max_slice_bytes and the
pump sleeps briefly between consecutive frames so a slow client is not
flooded. There is no flow-control feedback from the peer.
"""

import logging
import time
from typing import BinaryIO, Callable, Optional

from .config import DEFAULT_MAX_SLICE_BYTES, DEFAULT_SLICE_DELAY
from .exceptions import ConnectionClosed
from .framing import write_frame, write_end_of_stream
from .session import RenderSession

# Set up logging
logger = logging.getLogger(__name__)


class OutputPump:
    """Re-frames a session's rendered output onto a client stream."""

    def __init__(self, session: RenderSession, stream: BinaryIO,
                 max_slice_bytes: int = DEFAULT_MAX_SLICE_BYTES,
                 slice_delay: float = DEFAULT_SLICE_DELAY,
                 poll_interval: float = 0.005,
                 alive: Optional[Callable[[], bool]] = None):
        """
        Initialize the output pump.

        Args:
            session: Session whose output queue is drained
            stream: Writable binary stream to the client
            max_slice_bytes: Largest payload written per frame
            slice_delay: Pause between consecutive frames in seconds
            poll_interval: How often an idle pump checks for abort
            alive: Optional callable; an idle pump gives up once it returns False
        """
        self.session = session
        self.stream = stream
        self.max_slice_bytes = max_slice_bytes
        self.slice_delay = slice_delay
        self.poll_interval = poll_interval
        self.alive = alive

        self.frames_sent = 0
        self.bytes_sent = 0
        self._aborted = False

    def abort(self) -> None:
        """Stop pumping at the next opportunity, without a sentinel."""
        self._aborted = True

    def run(self) -> int:
        """
        Pump until the session is finished and its output is drained.

        Returns:
            Number of payload bytes sent

        Raises:
            ConnectionClosed: If the client went away or the pump was aborted
            RenderFault: If the renderer failed; no sentinel is sent
        """
        output = self.session.output

        while True:
            output.wait_for(lambda: len(output) > 0 or output.closed, self.poll_interval)
            if self._aborted:
                raise ConnectionClosed("Output pump aborted")

            available = len(output)
            if available == 0:
                if output.closed:
                    break
                if self.alive is not None and not self.alive():
                    raise ConnectionClosed("Client disconnected while waiting for the renderer")
                continue

            # Send in slices so the client is not overrun
            while available > 0:
                chunk = output.take(min(available, self.max_slice_bytes))
                write_frame(self.stream, chunk)
                self.frames_sent += 1
                self.bytes_sent += len(chunk)
                available -= len(chunk)

                if available > 0 and self.slice_delay:
                    time.sleep(self.slice_delay)
                if self._aborted:
                    raise ConnectionClosed("Output pump aborted")

        self.session.raise_if_failed()

        write_end_of_stream(self.stream)
        logger.info(f"Output complete: {self.bytes_sent} bytes in {self.frames_sent} frames")
        return self.bytes_sent
