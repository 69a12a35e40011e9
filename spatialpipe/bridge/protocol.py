"""
Handshake Protocol Module

This module contains the codec for the fixed 8-byte control message that
opens every connection. The message negotiates the PCM format the client
expects and selects the operating mode through the sign of the update rate.

Layout (little-endian):
    [1 byte  - bit depth]
    [1 byte  - mandatory frames]
    [2 bytes - output channels, unsigned]
    [4 bytes - update rate, signed; positive = streaming, negative = file]
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Union

from .config import HANDSHAKE_SIZE, SUPPORTED_BIT_DEPTHS
from .exceptions import ProtocolSyncError, ConnectionClosed
from .framing import read_exactly

HANDSHAKE_FORMAT = '<BBHi'


class BitDepth(IntEnum):
    """PCM sample formats a client may request."""
    INT8 = 8
    INT16 = 16
    INT24 = 24
    INT32 = 32

    @property
    def bytes_per_sample(self) -> int:
        return self.value // 8


@dataclass(frozen=True)
class StreamingMode:
    """Client streams input frames and expects one reply per frame."""
    update_rate: int


@dataclass(frozen=True)
class FileMode:
    """Client sends a file path and receives the whole rendered output."""
    block_size: int


Mode = Union[StreamingMode, FileMode]


@dataclass(frozen=True)
class Handshake:
    """
    Decoded control message.

    Attributes:
        bit_depth: Sample format of the rendered output
        mandatory_frames: Render blocks that must accumulate before a reply
        output_channels: Channel count the client expects
        update_rate: Samples per render block, negative in file mode
    """
    bit_depth: BitDepth
    mandatory_frames: int
    output_channels: int
    update_rate: int

    @classmethod
    def streaming(cls, bit_depth: int, mandatory_frames: int, output_channels: int,
                  update_rate: int) -> 'Handshake':
        """Build a streaming-mode handshake from a positive block size."""
        return cls(BitDepth(bit_depth), mandatory_frames, output_channels, abs(update_rate))

    @classmethod
    def file(cls, bit_depth: int, mandatory_frames: int, output_channels: int,
             update_rate: int) -> 'Handshake':
        """Build a file-mode handshake from a positive block size."""
        return cls(BitDepth(bit_depth), mandatory_frames, output_channels, -abs(update_rate))

    @property
    def is_file_mode(self) -> bool:
        return self.update_rate < 0

    @property
    def absolute_update_rate(self) -> int:
        return abs(self.update_rate)

    @property
    def mode(self) -> Mode:
        if self.is_file_mode:
            return FileMode(self.absolute_update_rate)
        return StreamingMode(self.update_rate)

    @property
    def frame_size(self) -> int:
        """Bytes in one interleaved sample frame of the output."""
        return self.output_channels * self.bit_depth.bytes_per_sample

    @property
    def mandatory_bytes(self) -> int:
        """Rendered bytes that must be pending before a streaming reply is sent."""
        return self.mandatory_frames * self.absolute_update_rate * self.frame_size

    def encode(self) -> bytes:
        """
        Pack the handshake into its 8-byte wire form.

        Returns:
            Encoded handshake

        Raises:
            ProtocolSyncError: If the update rate is zero
            struct.error: If a field does not fit its wire width
        """
        if self.update_rate == 0:
            raise ProtocolSyncError("Update rate must not be zero")
        return struct.pack(HANDSHAKE_FORMAT, int(self.bit_depth), self.mandatory_frames,
                           self.output_channels, self.update_rate)

    @classmethod
    def decode(cls, data: bytes) -> 'Handshake':
        """
        Unpack and validate an 8-byte handshake.

        Args:
            data: Exactly 8 bytes received from the client

        Returns:
            Decoded handshake

        Raises:
            ProtocolSyncError: If the message is malformed or the update rate is zero
        """
        if len(data) != HANDSHAKE_SIZE:
            raise ProtocolSyncError(f"Handshake must be {HANDSHAKE_SIZE} bytes, got {len(data)}")

        bit_depth, mandatory_frames, output_channels, update_rate = struct.unpack(HANDSHAKE_FORMAT, data)

        if update_rate == 0:
            raise ProtocolSyncError("Update rate of zero in handshake")
        if bit_depth not in SUPPORTED_BIT_DEPTHS:
            raise ProtocolSyncError(f"Unsupported bit depth in handshake: {bit_depth}")
        if output_channels == 0:
            raise ProtocolSyncError("Handshake requests zero output channels")

        return cls(BitDepth(bit_depth), mandatory_frames, output_channels, update_rate)


def read_handshake(stream: BinaryIO) -> Handshake:
    """
    Read and decode the handshake from a stream, blocking until all 8 bytes arrive.

    Raises:
        ConnectionClosed: If the stream closes before the handshake is complete
        ProtocolSyncError: If the handshake is invalid
    """
    try:
        data = read_exactly(stream, HANDSHAKE_SIZE)
    except OSError as e:
        raise ConnectionClosed(f"Stream failed while reading handshake: {e}") from e
    if len(data) < HANDSHAKE_SIZE:
        raise ConnectionClosed(f"Stream closed after {len(data)}/{HANDSHAKE_SIZE} handshake bytes")
    return Handshake.decode(data)


def write_handshake(stream: BinaryIO, handshake: Handshake) -> None:
    """Write the handshake and flush so the server sees it immediately."""
    data = handshake.encode()
    try:
        stream.write(data)
        stream.flush()
    except OSError as e:
        raise ConnectionClosed(f"Stream failed while writing handshake: {e}") from e
