"""
Unit tests for the render session module.

These tests run real render threads against the reference renderer and a few
scripted renderers.
"""

import struct
import threading

import pytest
import numpy as np

from spatialpipe.bridge.config import RendererConfig
from spatialpipe.bridge.exceptions import RenderFault
from spatialpipe.bridge.pcm import decode_pcm
from spatialpipe.bridge.protocol import Handshake
from spatialpipe.bridge.renderers import ChannelMapRenderer, ExternalRenderer, RenderStream
from spatialpipe.bridge.session import RenderSession, SessionListener, SessionState


class ScriptedStream(RenderStream):
    """Stream producing constant blocks, optionally failing after some of them."""

    def __init__(self, channels, update_rate, blocks=None, fail_after=None, total_samples=None):
        self.channels = channels
        self.update_rate = update_rate
        self.blocks = blocks
        self.fail_after = fail_after
        self.total_samples = total_samples
        self.rendered = 0
        self.closed = False

    def render(self):
        if self.fail_after is not None and self.rendered >= self.fail_after:
            raise RuntimeError("decoder crashed")
        if self.blocks is not None and self.rendered >= self.blocks:
            return None
        self.rendered += 1
        return np.full((self.channels, self.update_rate), 0.25, dtype=np.float32)

    def close(self):
        self.closed = True


class ScriptedRenderer(ExternalRenderer):

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.stream = None
        self.request = None

    def open(self, source, request):
        self.request = request
        channels = self.kwargs.pop('channels', request.output_channels)
        self.stream = ScriptedStream(channels, request.update_rate, **self.kwargs)
        return self.stream


class RecordingListener(SessionListener):

    def __init__(self):
        self.started = []
        self.meters = []
        self.faults = []

    def on_rendering_started(self, session):
        self.started.append(session)

    def on_meters(self, meters):
        self.meters.append(meters)

    def on_render_fault(self, error):
        self.faults.append(error)


def pcm_block(frames, channels=2):
    values = [(i * 37) % 20000 - 10000 for i in range(frames * channels)]
    return struct.pack(f'<{len(values)}h', *values)


class TestStreamingSession:
    """Tests for sessions fed from streamed input frames."""

    def test_passthrough(self):
        """Test that 16-bit stereo input comes out unchanged for a stereo request."""
        session = RenderSession(Handshake.streaming(16, 1, 2, 256),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        session.start()
        data = pcm_block(256)
        session.feed(data)

        assert session.wait_for_output(len(data), 2.0)
        assert session.output.take(len(data)) == data
        assert session.input_count == 1

        session.finish_input()
        session.join(2.0)
        assert session.finished
        assert session.state is SessionState.FINISHED

    def test_starved_renderer(self):
        """Test that waiting ends when the renderer needs more input than it has."""
        session = RenderSession(Handshake.streaming(16, 1, 2, 256),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        session.start()
        session.feed(pcm_block(100))

        assert session.wait_for_output(1024, 2.0)
        assert len(session.output) == 0
        assert not session.finished

        session.stop()
        session.join(2.0)

    def test_partial_block_flushed_on_finish(self):
        """Test that the last short block is padded and rendered."""
        session = RenderSession(Handshake.streaming(16, 1, 2, 256),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        session.start()
        session.feed(pcm_block(100))
        session.finish_input()
        session.join(2.0)

        assert session.finished
        output = session.output.take(10 ** 6)
        assert len(output) == 256 * 4
        assert output[:400] == pcm_block(100)
        assert not any(output[400:])

    def test_upmix_to_requested_channels(self):
        session = RenderSession(Handshake.streaming(24, 1, 6, 128),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        session.start()
        session.feed(pcm_block(128))
        session.finish_input()
        session.join(2.0)

        block = decode_pcm(session.output.take(10 ** 6), 6, 24)
        assert block.shape == (6, 128)
        assert not block[2:].any()

    def test_stop_unblocks_renderer(self):
        session = RenderSession(Handshake.streaming(16, 1, 2, 256),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        session.start()
        session.stop()
        session.join(2.0)
        assert session.finished
        assert session.state is SessionState.STOPPED

    def test_stop_wakes_output_waiter(self):
        """Test that a thread waiting for output returns once the session is stopped."""
        session = RenderSession(Handshake.streaming(16, 1, 2, 256),
                                ChannelMapRenderer(RendererConfig(input_channels=2)))
        results = []
        waiter = threading.Thread(target=lambda: results.append(session.wait_for_output(1024, 5.0)))
        waiter.start()

        session.stop()
        waiter.join(2.0)
        assert not waiter.is_alive()
        assert results == [True]
        assert session.stopped


class TestFileSession:
    """Tests for sessions that open a file themselves."""

    def test_render_wav(self, wav_file, test_audio_stereo):
        """Test that a whole WAV file is rendered in update-rate blocks."""
        listener = RecordingListener()
        session = RenderSession(Handshake.file(16, 0, 6, 1024), ChannelMapRenderer(), listener)
        session.start(wav_file)
        session.join(5.0)

        assert session.state is SessionState.FINISHED
        assert session.output_count == 5
        output = session.output.take(10 ** 7)
        assert len(output) == 5 * 1024 * 6 * 2

        block = decode_pcm(output, 6, 16)
        n = test_audio_stereo.shape[1]
        assert np.allclose(block[:2, :n], test_audio_stereo, atol=1e-4)
        assert not block[:, n:].any()
        assert not block[2:].any()

        assert listener.started == [session]
        assert len(listener.meters) == 5
        assert listener.meters[0].shape == (6,)

    def test_stops_at_total_samples(self):
        """Test that an endless file stream stops once its length is covered."""
        renderer = ScriptedRenderer(total_samples=600)
        session = RenderSession(Handshake.file(16, 0, 2, 256), renderer)
        session.start('/dev/null')
        session.join(2.0)

        assert session.output_count == 3
        assert session.samples_rendered == 768
        assert renderer.stream.closed

    def test_requires_path(self):
        session = RenderSession(Handshake.file(16, 0, 2, 256), ChannelMapRenderer())
        with pytest.raises(ValueError):
            session.start()

    def test_start_twice(self):
        session = RenderSession(Handshake.file(16, 0, 2, 256), ScriptedRenderer(blocks=1))
        session.start('/dev/null')
        with pytest.raises(RuntimeError):
            session.start('/dev/null')
        session.join(2.0)


class TestRenderFaults:
    """Tests for renderer failures surfacing as render faults."""

    def test_failure_mid_render(self):
        listener = RecordingListener()
        renderer = ScriptedRenderer(fail_after=2)
        session = RenderSession(Handshake.file(16, 0, 2, 256), renderer, listener)
        session.start('/dev/null')
        session.join(2.0)

        assert session.state is SessionState.FAILED
        assert session.finished
        assert session.output_count == 2
        assert len(listener.faults) == 1
        with pytest.raises(RenderFault):
            session.raise_if_failed()

    def test_unreadable_file(self, tmp_path):
        """Test that a file the renderer cannot open is a render fault."""
        path = tmp_path / "not-audio.wav"
        path.write_bytes(b'this is not a wav file')
        session = RenderSession(Handshake.file(16, 0, 2, 256), ChannelMapRenderer())
        session.start(str(path))
        session.join(2.0)

        assert session.state is SessionState.FAILED
        with pytest.raises(RenderFault):
            session.raise_if_failed()

    def test_excess_channels_folded(self):
        renderer = ScriptedRenderer(channels=4, blocks=1)
        session = RenderSession(Handshake.file(16, 0, 2, 64), renderer)
        session.start('/dev/null')
        session.join(2.0)

        block = decode_pcm(session.output.take(10 ** 6), 2, 16)
        assert block.shape == (2, 64)
        assert np.allclose(block, 0.5, atol=1e-4)
