"""
Unit tests for the length-prefixed framing module.
"""

import io
import struct

import pytest

from spatialpipe.bridge.config import MAX_CHUNK_BYTES
from spatialpipe.bridge.exceptions import (
    ConnectionClosed, ShortRead, InvalidFrameLength, InvalidPathLength
)
from spatialpipe.bridge.framing import (
    read_exactly, read_frame, write_frame, write_end_of_stream,
    encode_path_directive, write_path_directive, read_path_directive
)


class TrickleStream:
    """Readable stream that hands out at most one byte per read."""

    def __init__(self, data):
        self.data = data
        self.position = 0

    def read(self, n):
        chunk = self.data[self.position:self.position + min(n, 1)]
        self.position += len(chunk)
        return chunk


class BrokenStream:
    """Writable stream whose peer has gone away."""

    def write(self, data):
        raise BrokenPipeError("peer closed")

    def flush(self):
        pass


class FailingStream:
    """Readable stream that hands out some bytes and then fails."""

    def __init__(self, data):
        self.data = data

    def read(self, n):
        if not self.data:
            raise ConnectionResetError("peer reset")
        chunk, self.data = self.data[:n], self.data[n:]
        return chunk


def frames_in(data):
    """Split raw bytes into frame payloads, None standing for a sentinel."""
    stream = io.BytesIO(data)
    frames = []
    while stream.tell() < len(data):
        frames.append(read_frame(stream))
    return frames


class TestFrames:
    """Tests for data frames and the sentinel."""

    @pytest.mark.parametrize("size", [1, 4096, MAX_CHUNK_BYTES])
    def test_payload_sizes(self, size):
        """Test frames at the small, typical and maximum sizes."""
        payload = bytes([size % 251]) * size
        stream = io.BytesIO()
        write_frame(stream, payload)
        assert len(stream.getvalue()) == size + 4

        stream.seek(0)
        assert read_frame(stream) == payload

    def test_oversized_write_rejected(self):
        with pytest.raises(InvalidFrameLength):
            write_frame(io.BytesIO(), b'\x00' * (MAX_CHUNK_BYTES + 1))

    def test_oversized_read_rejected(self):
        """Test that the length is checked before any payload is read."""
        stream = io.BytesIO(struct.pack('<i', MAX_CHUNK_BYTES + 1))
        with pytest.raises(InvalidFrameLength) as excinfo:
            read_frame(stream)
        assert excinfo.value.length == MAX_CHUNK_BYTES + 1

    def test_negative_length_rejected(self):
        with pytest.raises(InvalidFrameLength):
            read_frame(io.BytesIO(struct.pack('<i', -1) + b'\x00' * 8))

    def test_sentinel(self):
        """Test that the end-of-stream frame is four zero bytes."""
        stream = io.BytesIO()
        write_end_of_stream(stream)
        assert stream.getvalue() == b'\x00\x00\x00\x00'

        stream.seek(0)
        assert read_frame(stream) is None

    def test_frame_sequence(self):
        stream = io.BytesIO()
        write_frame(stream, b'abc')
        write_frame(stream, b'')
        write_frame(stream, b'de')
        assert frames_in(stream.getvalue()) == [b'abc', None, b'de']

    def test_short_payload(self):
        """Test a stream that closes in the middle of a payload."""
        stream = io.BytesIO(struct.pack('<i', 100) + b'\x01' * 10)
        with pytest.raises(ShortRead) as excinfo:
            read_frame(stream)
        assert excinfo.value.received == 10
        assert excinfo.value.expected == 100

    def test_failed_payload_counts_received_bytes(self):
        """Test that a transport error mid-payload reports the bytes that did arrive."""
        stream = FailingStream(struct.pack('<i', 100) + b'abc')
        with pytest.raises(ShortRead) as excinfo:
            read_frame(stream)
        assert excinfo.value.received == 3
        assert excinfo.value.expected == 100
        assert isinstance(excinfo.value.__cause__, ConnectionResetError)

    def test_closed_before_header(self):
        with pytest.raises(ConnectionClosed):
            read_frame(io.BytesIO(b''))
        with pytest.raises(ConnectionClosed):
            read_frame(io.BytesIO(b'\x04\x00'))

    def test_fragmented_reads(self):
        """Test that frames are reassembled from one-byte reads."""
        data = struct.pack('<i', 5) + b'hello'
        assert read_frame(TrickleStream(data)) == b'hello'
        assert read_exactly(TrickleStream(b'abcdef'), 4) == b'abcd'

    def test_write_to_closed_peer(self):
        with pytest.raises(ConnectionClosed):
            write_frame(BrokenStream(), b'data')


class TestPathDirective:
    """Tests for the file-mode path directive."""

    @pytest.mark.parametrize("length", [0, -1, 65536])
    def test_invalid_lengths(self, length):
        stream = io.BytesIO(struct.pack('<i', length) + b'a' * 16)
        with pytest.raises(InvalidPathLength):
            read_path_directive(stream)

    def test_ten_byte_path(self):
        """Test that a valid path is forwarded intact."""
        path = '/media/a.m'
        assert len(path.encode('utf-8')) == 10
        stream = io.BytesIO(struct.pack('<i', 10) + path.encode('utf-8'))
        assert read_path_directive(stream) == path

    def test_utf8_roundtrip(self):
        path = '/films/Café/Ünïcode.mkv'
        stream = io.BytesIO()
        write_path_directive(stream, path)
        assert stream.getvalue()[:4] == struct.pack('<i', len(path.encode('utf-8')))

        stream.seek(0)
        assert read_path_directive(stream) == path

    def test_invalid_utf8(self):
        stream = io.BytesIO(struct.pack('<i', 2) + b'\xff\xfe')
        with pytest.raises(InvalidPathLength):
            read_path_directive(stream)

    def test_encode_limits(self):
        """Test that empty and oversized paths are refused before sending."""
        with pytest.raises(InvalidPathLength):
            encode_path_directive('')
        with pytest.raises(InvalidPathLength):
            encode_path_directive('a' * 65536)
        assert len(encode_path_directive('a' * 65535)) == 65535 + 4
