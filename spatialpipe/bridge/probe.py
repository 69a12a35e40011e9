"""
Source Preparation Module

This module wraps the external tools that decide how a file reaches the
renderer: a codec probe (ffprobe) and a converter that turns TrueHD streams
into a renderer-native object-audio file (ffmpeg + truehdd).

Only the resulting path matters to the pipe; anything the probe does not
special-case is streamed to the renderer as it is.
"""

import logging
import os
import subprocess
from typing import List, Optional

from .exceptions import ConversionError

# Set up logging
logger = logging.getLogger(__name__)

UNKNOWN_CODEC = 'unknown'

# Codecs that need conversion before the renderer can open them
CONVERTED_CODECS = {'truehd'}


class CodecProbe:
    """Identifies the codec of a file's first audio stream."""

    def __init__(self, executable: str = 'ffprobe'):
        self.executable = executable

    def command(self, path: str) -> List[str]:
        return [self.executable, '-v', 'error', '-select_streams', 'a:0',
                '-show_entries', 'stream=codec_name',
                '-of', 'default=noprint_wrappers=1:nokey=1', path]

    def probe(self, path: str) -> str:
        """
        Probe a file.

        Args:
            path: File to inspect

        Returns:
            Codec identifier such as 'truehd' or 'eac3', or 'unknown'
        """
        try:
            result = subprocess.run(self.command(path), capture_output=True, text=True, check=False)
        except OSError as e:
            logger.warning(f"Codec probe unavailable ({self.executable}): {e}")
            return UNKNOWN_CODEC

        codec = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ''
        if result.returncode != 0 or not codec:
            logger.warning(f"Could not detect codec of {path}: {result.stderr.strip()}")
            return UNKNOWN_CODEC
        return codec


class FormatConverter:
    """Converts a TrueHD stream to a renderer-native object-audio file."""

    def __init__(self, decoder: str = 'truehdd', extractor: str = 'ffmpeg'):
        self.decoder = decoder
        self.extractor = extractor

    def _run(self, command: List[str]) -> None:
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ConversionError(f"Cannot run {command[0]}: {e}") from e
        if result.returncode != 0:
            raise ConversionError(f"{command[0]} failed ({result.returncode}): {result.stderr.strip()}")

    def extract(self, source: str, output: str) -> str:
        """Copy the first audio stream of a container into an elementary TrueHD file."""
        logger.info(f"Extracting TrueHD stream from {source}")
        self._run([self.extractor, '-hide_banner', '-loglevel', 'error', '-y',
                   '-i', source, '-map', '0:a:0', '-c', 'copy', '-f', 'truehd', output])
        return output

    def convert(self, source: str, output_dir: str) -> str:
        """
        Convert a file holding a TrueHD stream.

        The decoder writes <prefix>.atmos plus .audio and .metadata sidecars;
        only the .atmos path is returned.

        Args:
            source: Container or elementary stream with TrueHD audio
            output_dir: Directory for intermediate and converted files

        Returns:
            Path of the converted file

        Raises:
            ConversionError: If a tool fails or produces no output
        """
        os.makedirs(output_dir, exist_ok=True)
        name = os.path.splitext(os.path.basename(source))[0]
        elementary = os.path.join(output_dir, f"{name}.truehd")
        prefix = os.path.join(output_dir, name)

        self.extract(source, elementary)
        logger.info(f"Converting TrueHD to object audio: {prefix}.atmos")
        try:
            self._run([self.decoder, 'decode', '--output-path', prefix, elementary])
        finally:
            os.remove(elementary)

        converted = f"{prefix}.atmos"
        if not os.path.exists(converted):
            raise ConversionError(f"Converter produced no output at {converted}")
        return converted


def prepare_source(path: str, probe: Optional[CodecProbe] = None,
                   converter: Optional[FormatConverter] = None,
                   work_dir: Optional[str] = None) -> str:
    """
    Return the path the renderer should open for a file.

    Args:
        path: File chosen by the user
        probe: Codec probe, ffprobe by default
        converter: Converter for TrueHD, truehdd by default
        work_dir: Where converted files go; next to the source by default

    Returns:
        Path of a file the renderer can open directly
    """
    probe = probe or CodecProbe()
    codec = probe.probe(path)
    logger.info(f"Detected codec: {codec}")

    if codec not in CONVERTED_CODECS:
        logger.info(f"Using direct streaming for {codec}")
        return path

    converter = converter or FormatConverter()
    return converter.convert(path, work_dir or os.path.dirname(os.path.abspath(path)))
