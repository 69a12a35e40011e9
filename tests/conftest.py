"""
Pytest configuration file for pipe bridge tests.
"""

import os
import shutil
import tempfile
import time

import pytest
import numpy as np
from scipy.io import wavfile

from spatialpipe.bridge.config import ProducerConfig, ServerConfig, SOCKET_ENV_VAR


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it holds or the timeout expires; return its last value."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            return predicate()
        time.sleep(interval)
    return True


@pytest.fixture
def socket_dir():
    """Return a short temporary directory; Unix socket paths are limited to about 100 bytes."""
    path = tempfile.mkdtemp(prefix="sp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir, monkeypatch):
    """Return a socket path that endpoint discovery finds first."""
    monkeypatch.delenv(SOCKET_ENV_VAR, raising=False)
    return os.path.join(socket_dir, "pipe.sock")


@pytest.fixture
def server_config(socket_path):
    """Return a server configuration with short timeouts for tests."""
    return ServerConfig(
        socket_path=socket_path,
        launch_timeout=1.0,
        accept_poll_interval=0.05,
        render_wait_timeout=5.0,
        slice_delay=0.0,
    )


@pytest.fixture
def producer_config(socket_path):
    """Return a 16-bit stereo producer configuration."""
    return ProducerConfig(
        socket_path=socket_path,
        connect_timeout=2.0,
        bit_depth=16,
        mandatory_frames=6,
        output_channels=2,
        update_rate=1024,
        chunk_size=4096,
        initial_burst=10,
    )


@pytest.fixture
def test_pcm_stereo():
    """Create 12 chunks of 16-bit stereo PCM (1024 frames each)."""
    rng = np.random.default_rng(1234)
    samples = rng.integers(-16000, 16000, size=(12 * 1024, 2), dtype=np.int16)
    return samples.astype('<i2').tobytes()


@pytest.fixture
def test_audio_stereo():
    """Create a short stereo test signal."""
    # 0.1 seconds at 48 kHz with different frequencies in each channel
    sr = 48000
    t = np.arange(4800) / sr
    left = 0.5 * np.sin(2 * np.pi * 440 * t)  # 440 Hz in left channel
    right = 0.5 * np.sin(2 * np.pi * 880 * t)  # 880 Hz in right channel
    return np.vstack([left, right])


@pytest.fixture
def wav_file(tmp_path, test_audio_stereo):
    """Write the stereo test signal to a 16-bit WAV file and return its path."""
    path = str(tmp_path / "stereo.wav")
    data = np.round(test_audio_stereo.T * 32767).astype(np.int16)
    wavfile.write(path, 48000, data)
    return path
