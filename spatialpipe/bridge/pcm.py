"""
PCM Conversion Module

This module converts between float sample blocks and interleaved
little-endian PCM bytes, matches rendered channel layouts to the layout a
client asked for, and computes per-channel output meters.

Blocks follow the (n_channels, n_samples) convention used throughout the
package. Float samples are nominally in [-1.0, 1.0].
"""

import numpy as np

from .config import SUPPORTED_BIT_DEPTHS

# Full-scale values per integer bit depth
_SCALE = {
    8: 128.0,
    16: 32767.0,
    24: 8388607.0,
    32: 2147483647.0,
}

# Meter range in dB FS
METER_FLOOR_DB = -50.0


def _check_bit_depth(bit_depth: int) -> None:
    if bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise ValueError(f"Unsupported bit depth: {bit_depth}")


def encode_pcm(block: np.ndarray, bit_depth: int) -> bytes:
    """
    Convert a float block to interleaved PCM bytes.

    Args:
        block: Samples, shape (n_channels, n_samples)
        bit_depth: 8 (unsigned), 16, 24 or 32-bit signed output

    Returns:
        Interleaved little-endian PCM
    """
    _check_bit_depth(bit_depth)
    interleaved = np.clip(np.asarray(block, dtype=np.float64).T.reshape(-1), -1.0, 1.0)

    if bit_depth == 8:
        # 8-bit WAV samples are unsigned, centred on 128
        return np.clip(np.round(interleaved * 128.0) + 128.0, 0, 255).astype(np.uint8).tobytes()

    samples = np.round(interleaved * _SCALE[bit_depth]).astype('<i4')
    if bit_depth == 16:
        return samples.astype('<i2').tobytes()
    if bit_depth == 32:
        return samples.tobytes()

    # 24-bit: keep the three low bytes of each little-endian int32
    return samples.view(np.uint8).reshape(-1, 4)[:, :3].tobytes()


def decode_pcm(data: bytes, n_channels: int, bit_depth: int) -> np.ndarray:
    """
    Convert interleaved PCM bytes to a float block.

    Trailing bytes that do not form a whole sample frame are ignored.

    Args:
        data: Interleaved little-endian PCM
        n_channels: Number of interleaved channels
        bit_depth: 8 (unsigned), 16, 24 or 32-bit signed input

    Returns:
        Samples, shape (n_channels, n_samples), float32
    """
    _check_bit_depth(bit_depth)
    width = bit_depth // 8
    frame = width * n_channels
    usable = len(data) - len(data) % frame
    raw = np.frombuffer(data[:usable], dtype=np.uint8)

    if bit_depth == 8:
        samples = (raw.astype(np.float32) - 128.0) / 128.0
    elif bit_depth == 16:
        samples = raw.view('<i2').astype(np.float32) / _SCALE[16]
    elif bit_depth == 32:
        samples = (raw.view('<i4').astype(np.float64) / _SCALE[32]).astype(np.float32)
    else:
        triplets = raw.reshape(-1, 3).astype(np.int32)
        values = triplets[:, 0] | (triplets[:, 1] << 8) | (triplets[:, 2] << 16)
        values = np.where(values & 0x800000, values - 0x1000000, values)
        samples = values.astype(np.float32) / _SCALE[24]

    return samples.reshape(-1, n_channels).T.copy()


def match_channels(block: np.ndarray, n_channels: int) -> np.ndarray:
    """
    Fit a rendered block to the channel count the client expects.

    Missing channels are filled with silence. Excess channels are folded
    onto the requested ones (channel i is mixed into i % n_channels).

    Args:
        block: Samples, shape (n_rendered, n_samples)
        n_channels: Requested channel count

    Returns:
        Samples, shape (n_channels, n_samples)
    """
    n_rendered, n_samples = block.shape
    if n_rendered == n_channels:
        return block

    out = np.zeros((n_channels, n_samples), dtype=block.dtype)
    if n_rendered < n_channels:
        out[:n_rendered] = block
        return out

    for ch in range(n_rendered):
        out[ch % n_channels] += block[ch]
    return out


def channel_meters(block: np.ndarray) -> np.ndarray:
    """
    Compute a level per channel for metering.

    Each channel's RMS is converted to dB FS and mapped linearly from
    [-50, 0] dB to [0, 1], clamped.

    Args:
        block: Samples, shape (n_channels, n_samples)

    Returns:
        Meter values, shape (n_channels,)
    """
    if block.shape[1] == 0:
        return np.zeros(block.shape[0], dtype=np.float32)

    rms = np.sqrt(np.mean(np.square(block, dtype=np.float64), axis=1))
    with np.errstate(divide='ignore'):
        db = 20.0 * np.log10(rms)
    meters = (db - METER_FLOOR_DB) / -METER_FLOOR_DB
    return np.clip(np.nan_to_num(meters, nan=0.0, neginf=0.0), 0.0, 1.0).astype(np.float32)


def frame_bytes(n_channels: int, bit_depth: int) -> int:
    """Bytes in one interleaved sample frame."""
    _check_bit_depth(bit_depth)
    return n_channels * (bit_depth // 8)
