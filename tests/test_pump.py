"""
Unit tests for the output pump module.
"""

import io
import threading

import pytest

from spatialpipe.bridge.exceptions import ConnectionClosed, RenderFault
from spatialpipe.bridge.framing import read_frame
from spatialpipe.bridge.protocol import Handshake
from spatialpipe.bridge.pump import OutputPump
from spatialpipe.bridge.renderers import ChannelMapRenderer
from spatialpipe.bridge.session import RenderSession


class BrokenStream:
    """Writable stream whose peer has gone away."""

    def write(self, data):
        raise BrokenPipeError("peer closed")

    def flush(self):
        pass


def unstarted_session():
    """A file-mode session whose output queue is filled by the test."""
    return RenderSession(Handshake.file(16, 0, 2, 256), ChannelMapRenderer())


def read_all_frames(data):
    """Return every frame in data; None marks a sentinel."""
    stream = io.BytesIO(data)
    frames = []
    while stream.tell() < len(data):
        frames.append(read_frame(stream))
    return frames


class TestOutputPump:
    """Tests for draining rendered output onto a stream."""

    def test_slices_then_single_sentinel(self):
        """Test that output is cut into bounded slices followed by exactly one sentinel."""
        session = unstarted_session()
        session.output.write(b'\x01' * 2500)
        session.output.close()

        stream = io.BytesIO()
        pump = OutputPump(session, stream, max_slice_bytes=1000, slice_delay=0)
        assert pump.run() == 2500

        frames = read_all_frames(stream.getvalue())
        assert [len(f) for f in frames[:-1]] == [1000, 1000, 500]
        assert frames[-1] is None
        assert frames.count(None) == 1
        assert pump.frames_sent == 3

    def test_waits_for_renderer(self):
        """Test that output written later is still pumped before the sentinel."""
        session = unstarted_session()

        def render_later():
            session.output.write(b'a' * 300)
            session.output.write(b'b' * 300)
            session.output.close()

        timer = threading.Timer(0.05, render_later)
        timer.start()
        stream = io.BytesIO()
        OutputPump(session, stream, max_slice_bytes=65536, slice_delay=0).run()
        timer.join()

        frames = read_all_frames(stream.getvalue())
        assert b''.join(f for f in frames if f) == b'a' * 300 + b'b' * 300
        assert frames[-1] is None

    def test_empty_output(self):
        session = unstarted_session()
        session.output.close()
        stream = io.BytesIO()
        assert OutputPump(session, stream).run() == 0
        assert stream.getvalue() == b'\x00\x00\x00\x00'

    def test_no_sentinel_after_fault(self):
        """Test that a failed render ends without a sentinel."""
        session = unstarted_session()
        session.output.write(b'\x02' * 100)
        session.error = RuntimeError("decoder crashed")
        session.output.close()

        stream = io.BytesIO()
        with pytest.raises(RenderFault):
            OutputPump(session, stream, slice_delay=0).run()

        frames = read_all_frames(stream.getvalue())
        assert frames == [b'\x02' * 100]

    def test_disconnect(self):
        session = unstarted_session()
        session.output.write(b'\x03' * 100)
        session.output.close()
        with pytest.raises(ConnectionClosed):
            OutputPump(session, BrokenStream()).run()

    def test_idle_pump_gives_up_on_dead_client(self):
        """Test that a pump waiting on a silent renderer stops once the client is gone."""
        session = unstarted_session()
        stream = io.BytesIO()
        checks = []

        def alive():
            checks.append(True)
            return len(checks) < 3

        pump = OutputPump(session, stream, poll_interval=0.01, alive=alive)
        with pytest.raises(ConnectionClosed):
            pump.run()
        assert len(checks) == 3
        assert stream.getvalue() == b''

    def test_abort(self):
        """Test that an aborted pump stops without writing anything."""
        session = unstarted_session()
        stream = io.BytesIO()
        pump = OutputPump(session, stream, poll_interval=0.01)
        pump.abort()
        with pytest.raises(ConnectionClosed):
            pump.run()
        assert stream.getvalue() == b''
