"""
External Renderer Interface Module

This module defines the boundary to the spatial-audio rendering engine and
ships a reference implementation that needs no engine at all.

A renderer is opened on a readable byte source (streaming mode) or on an
opened file handle (file mode) together with a RenderRequest, and returns a
RenderStream that hands out one float block of update_rate samples at a time.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Optional

import numpy as np
from scipy.io import wavfile

from .config import RendererConfig, DEFAULT_SAMPLE_RATE
from .pcm import decode_pcm, frame_bytes

# Set up logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderRequest:
    """Parameters negotiated by the handshake, as seen by a renderer."""
    output_channels: int
    bit_depth: int
    update_rate: int  # samples per block, always positive
    file_mode: bool = False
    sample_rate: int = DEFAULT_SAMPLE_RATE


class RenderStream(ABC):
    """
    An opened rendering job.

    Attributes:
        sample_rate: Sample rate of the rendered audio in Hz
        channels: Channel count of the blocks returned by render()
        total_samples: Samples the source holds, if known
    """

    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = 0
    total_samples: Optional[int] = None

    @abstractmethod
    def render(self) -> Optional[np.ndarray]:
        """
        Render the next block.

        Returns:
            Samples, shape (channels, update_rate), or None once the source is exhausted
        """
        pass

    def close(self) -> None:
        """Release resources held by the stream."""
        pass


class ExternalRenderer(ABC):
    """Factory for render streams; one stream per connection."""

    @abstractmethod
    def open(self, source: BinaryIO, request: RenderRequest) -> RenderStream:
        """
        Open a rendering job.

        Args:
            source: Readable byte source or opened file handle
            request: Negotiated output parameters

        Returns:
            The opened stream

        Raises:
            Exception: Any failure is reported to the client's connection as a render fault
        """
        pass


class PcmStream(RenderStream):
    """Render stream over raw interleaved PCM read block by block."""

    def __init__(self, source: BinaryIO, channels: int, bit_depth: int,
                 sample_rate: int, update_rate: int):
        self.source = source
        self.channels = channels
        self.bit_depth = bit_depth
        self.sample_rate = sample_rate
        self.update_rate = update_rate
        self.block_bytes = update_rate * frame_bytes(channels, bit_depth)

    def render(self) -> Optional[np.ndarray]:
        data = self.source.read(self.block_bytes)
        if not data:
            return None

        block = decode_pcm(data, self.channels, self.bit_depth)
        if block.shape[1] == 0:
            return None
        if block.shape[1] < self.update_rate:
            padded = np.zeros((self.channels, self.update_rate), dtype=np.float32)
            padded[:, :block.shape[1]] = block
            block = padded
        return block


class ArrayStream(RenderStream):
    """Render stream over audio already held in memory."""

    def __init__(self, audio: np.ndarray, sample_rate: int, update_rate: int):
        """
        Args:
            audio: Samples, shape (channels, n_samples)
            sample_rate: Sample rate in Hz
            update_rate: Samples per block
        """
        self.audio = audio
        self.channels = audio.shape[0]
        self.sample_rate = sample_rate
        self.update_rate = update_rate
        self.total_samples = audio.shape[1]
        self.position = 0

    def render(self) -> Optional[np.ndarray]:
        if self.position >= self.total_samples:
            return None

        block = np.zeros((self.channels, self.update_rate), dtype=np.float32)
        chunk = self.audio[:, self.position:self.position + self.update_rate]
        block[:, :chunk.shape[1]] = chunk
        self.position += self.update_rate
        return block


def load_wav_block(source: BinaryIO):
    """
    Read a whole WAV file into a float block.

    Args:
        source: Opened WAV file

    Returns:
        Tuple of (samples with shape (channels, n_samples), sample_rate)
    """
    sample_rate, data = wavfile.read(source)

    # Convert to float and normalize
    if data.dtype == np.int16:
        audio = data.astype(np.float32) / 32767.0
    elif data.dtype == np.int32:
        audio = (data.astype(np.float64) / 2147483647.0).astype(np.float32)
    elif data.dtype == np.uint8:
        audio = (data.astype(np.float32) - 128) / 128.0
    else:  # Assume it's already normalized float
        audio = data.astype(np.float32)

    if audio.ndim == 1:
        audio = audio[np.newaxis, :]
    else:
        audio = audio.T

    return np.ascontiguousarray(audio), sample_rate


class ChannelMapRenderer(ExternalRenderer):
    """
    Reference renderer that passes audio through unchanged.

    Streaming sources are raw interleaved PCM in the format described by the
    RendererConfig; file sources are WAV files. Channel layout and sample
    format conversion to the client's request happen in the render session.
    """

    def __init__(self, config: Optional[RendererConfig] = None):
        self.config = config or RendererConfig()

    def open(self, source: BinaryIO, request: RenderRequest) -> RenderStream:
        if request.file_mode:
            audio, sample_rate = load_wav_block(source)
            logger.info(f"Opened WAV source: {audio.shape[0]}ch, {sample_rate}Hz, {audio.shape[1]} samples")
            return ArrayStream(audio, sample_rate, request.update_rate)

        logger.info(f"Opened PCM stream: {self.config.input_channels}ch, "
                    f"{self.config.input_bit_depth}-bit, {self.config.sample_rate}Hz")
        return PcmStream(source, self.config.input_channels, self.config.input_bit_depth,
                         self.config.sample_rate, request.update_rate)
