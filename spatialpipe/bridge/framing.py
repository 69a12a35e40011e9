"""
Length-prefixed Framing Module

This module contains the framing primitives shared by both ends of the pipe.

Frame layout:
    [4 bytes - payload length (little-endian)]
    [N bytes - payload]

A zero-length frame never carries data: it is the end-of-stream sentinel,
or a keepalive when it answers a streamed input frame.
"""

import struct
from typing import BinaryIO, Optional, Union

from .config import FRAME_HEADER_SIZE, MAX_CHUNK_BYTES, MAX_PATH_BYTES
from .exceptions import ConnectionClosed, ShortRead, InvalidFrameLength, InvalidPathLength

LENGTH_FORMAT = '<i'

BytesLike = Union[bytes, bytearray, memoryview]


def read_exactly(stream: BinaryIO, n: int) -> bytes:
    """
    Read exactly n bytes, looping over short reads.

    Args:
        stream: Readable binary stream
        n: Number of bytes wanted

    Returns:
        The bytes read; shorter than n only if the stream reached EOF
    """
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


def _read_length(stream: BinaryIO, what: str) -> int:
    try:
        header = read_exactly(stream, FRAME_HEADER_SIZE)
    except OSError as e:
        raise ConnectionClosed(f"Stream failed while reading {what}: {e}") from e
    if len(header) < FRAME_HEADER_SIZE:
        raise ConnectionClosed(f"Stream closed after {len(header)}/{FRAME_HEADER_SIZE} {what} bytes")
    return struct.unpack(LENGTH_FORMAT, header)[0]


def _read_payload(stream: BinaryIO, length: int) -> bytes:
    buf = bytearray()
    while len(buf) < length:
        try:
            chunk = stream.read(length - len(buf))
        except OSError as e:
            raise ShortRead(len(buf), length) from e
        if not chunk:
            raise ShortRead(len(buf), length)
        buf.extend(chunk)
    return bytes(buf)


def read_frame(stream: BinaryIO, max_length: int = MAX_CHUNK_BYTES) -> Optional[bytes]:
    """
    Read one frame.

    Args:
        stream: Readable binary stream
        max_length: Largest accepted payload length

    Returns:
        The payload, or None for a zero-length (sentinel) frame

    Raises:
        ConnectionClosed: If fewer than 4 header bytes arrive
        InvalidFrameLength: If the length is negative or above max_length
        ShortRead: If the stream closes before the payload is complete
    """
    length = _read_length(stream, "frame header")
    if length == 0:
        return None
    if length < 0 or length > max_length:
        raise InvalidFrameLength(length, max_length)
    return _read_payload(stream, length)


def write_frame(stream: BinaryIO, payload: BytesLike) -> None:
    """
    Write one frame and flush it.

    The flush is required after every frame: the reader may sit behind an OS
    pipe that only makes data visible once flushed.

    Raises:
        InvalidFrameLength: If the payload is larger than MAX_CHUNK_BYTES
        ConnectionClosed: If the peer has gone away
    """
    length = len(payload)
    if length > MAX_CHUNK_BYTES:
        raise InvalidFrameLength(length, MAX_CHUNK_BYTES)
    try:
        stream.write(struct.pack(LENGTH_FORMAT, length))
        if length:
            stream.write(payload)
        stream.flush()
    except OSError as e:
        raise ConnectionClosed(f"Stream failed while writing frame: {e}") from e


def write_end_of_stream(stream: BinaryIO) -> None:
    """Write the zero-length sentinel frame."""
    write_frame(stream, b'')


def encode_path_directive(path: str) -> bytes:
    """
    Encode a file path as a length-prefixed UTF-8 string.

    Raises:
        InvalidPathLength: If the encoded path is empty or longer than 65535 bytes
    """
    data = path.encode('utf-8')
    if not 0 < len(data) <= MAX_PATH_BYTES:
        raise InvalidPathLength(len(data))
    return struct.pack(LENGTH_FORMAT, len(data)) + data


def write_path_directive(stream: BinaryIO, path: str) -> None:
    """Send the file-mode path directive and flush it."""
    directive = encode_path_directive(path)
    try:
        stream.write(directive)
        stream.flush()
    except OSError as e:
        raise ConnectionClosed(f"Stream failed while writing path: {e}") from e


def read_path_directive(stream: BinaryIO) -> str:
    """
    Read the file-mode path directive.

    Returns:
        The decoded path

    Raises:
        ConnectionClosed: If the length prefix does not arrive
        InvalidPathLength: If the length is outside (0, 65535] or the bytes are not UTF-8
        ShortRead: If the stream closes before the path is complete
    """
    length = _read_length(stream, "path length")
    if length <= 0 or length > MAX_PATH_BYTES:
        raise InvalidPathLength(length)
    data = _read_payload(stream, length)
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise InvalidPathLength(length, f"File path is not valid UTF-8: {e}") from e
