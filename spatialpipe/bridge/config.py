"""
Configuration Management Module

This module provides centralized configuration management for the pipe bridge,
including wire protocol constants, default settings, and configuration utilities.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
import json
import os
import tempfile

from .exceptions import ConfigurationError


# =====================================================================================
# Constants
# =====================================================================================

# Wire protocol
HANDSHAKE_SIZE = 8  # bytes
FRAME_HEADER_SIZE = 4  # bytes, little-endian length prefix
MAX_CHUNK_BYTES = 10_000_000  # largest payload accepted in a single frame
MAX_PATH_BYTES = 65535  # largest UTF-8 path accepted in file mode

# Sample formats
SUPPORTED_BIT_DEPTHS = [8, 16, 24, 32]
DEFAULT_BIT_DEPTH = 16
DEFAULT_SAMPLE_RATE = 48000  # Hz, used when the source does not report one

# Rendering defaults (1024 samples is ~21ms at 48kHz)
DEFAULT_UPDATE_RATE = 1024
DEFAULT_MANDATORY_FRAMES = 6
DEFAULT_OUTPUT_CHANNELS = 6  # 5.1

# Producer defaults
DEFAULT_CHUNK_SIZE = 4096  # bytes read from the source per input frame
DEFAULT_INITIAL_BURST = 20  # unpaired input frames before lockstep begins
DEFAULT_MAX_IDLE_REPLIES = 200  # consecutive keepalives tolerated
DEFAULT_CONNECT_TIMEOUT = 5.0  # seconds

# Server defaults
DEFAULT_LAUNCH_TIMEOUT = 3.0  # seconds allowed for (re)creating the endpoint
DEFAULT_MAX_SLICE_BYTES = 65536  # largest frame written by the output pump
DEFAULT_SLICE_DELAY = 0.001  # seconds between output pump slices

# Endpoint discovery
ENDPOINT_NAME = "spatialpipe.sock"
SOCKET_ENV_VAR = "SPATIALPIPE_SOCKET"
DEFAULT_SOCKET_PATH = os.path.join(tempfile.gettempdir(), ENDPOINT_NAME)


def candidate_socket_paths(configured: Optional[str] = None) -> List[str]:
    """
    List the locations a server endpoint may live at, most specific first.

    Args:
        configured: Explicitly configured socket path, if any

    Returns:
        De-duplicated list of candidate paths
    """
    candidates = [
        os.environ.get(SOCKET_ENV_VAR),
        configured,
        DEFAULT_SOCKET_PATH,
        os.path.join("/tmp", ENDPOINT_NAME),
        os.path.join("/var/tmp", ENDPOINT_NAME),
    ]
    paths = []
    for path in candidates:
        if path and path not in paths:
            paths.append(path)
    return paths


def bytes_per_sample(bit_depth: int) -> int:
    """Number of bytes one PCM sample of the given bit depth occupies."""
    if bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise ConfigurationError(f"Bit depth {bit_depth} not supported. Use one of: {SUPPORTED_BIT_DEPTHS}")
    return bit_depth // 8


# =====================================================================================
# Configuration Classes
# =====================================================================================

@dataclass
class ProducerConfig:
    """Configuration for the client side of the pipe"""

    # Endpoint
    socket_path: Optional[str] = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    connect_retry_interval: float = 0.05

    # Negotiated format
    bit_depth: int = DEFAULT_BIT_DEPTH
    mandatory_frames: int = DEFAULT_MANDATORY_FRAMES
    output_channels: int = DEFAULT_OUTPUT_CHANNELS
    update_rate: int = DEFAULT_UPDATE_RATE  # magnitude; the mode decides the sign

    # Lockstep
    chunk_size: int = DEFAULT_CHUNK_SIZE
    initial_burst: int = DEFAULT_INITIAL_BURST
    max_idle_replies: int = DEFAULT_MAX_IDLE_REPLIES

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.bit_depth not in SUPPORTED_BIT_DEPTHS:
            raise ConfigurationError(f"Bit depth {self.bit_depth} not supported. Use one of: {SUPPORTED_BIT_DEPTHS}")

        if not 0 <= self.mandatory_frames <= 255:
            raise ConfigurationError("Mandatory frames must be between 0 and 255")

        if not 1 <= self.output_channels <= 65535:
            raise ConfigurationError("Output channels must be between 1 and 65535")

        if not 1 <= self.update_rate <= 2 ** 31 - 1:
            raise ConfigurationError("Update rate must be a positive 32-bit integer")

        if not 1 <= self.chunk_size <= MAX_CHUNK_BYTES:
            raise ConfigurationError(f"Chunk size must be between 1 and {MAX_CHUNK_BYTES}")

        if self.initial_burst < 0 or self.max_idle_replies < 0:
            raise ConfigurationError("Initial burst and idle reply limit must be non-negative")

        if self.connect_timeout <= 0:
            raise ConfigurationError("Connect timeout must be positive")


@dataclass
class ServerConfig:
    """Configuration for the watchdog and the output pump"""

    socket_path: str = DEFAULT_SOCKET_PATH
    launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT
    accept_poll_interval: float = 0.2  # how often a blocked accept checks for shutdown
    liveness_interval: float = 0.1  # how often a waiting connection checks its client

    # None waits for the renderer indefinitely
    render_wait_timeout: Optional[float] = None

    # Output pump
    max_slice_bytes: int = DEFAULT_MAX_SLICE_BYTES
    slice_delay: float = DEFAULT_SLICE_DELAY
    pump_poll_interval: float = 0.005

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.socket_path:
            raise ConfigurationError("Socket path must not be empty")

        if self.launch_timeout <= 0 or self.accept_poll_interval <= 0 or self.liveness_interval <= 0:
            raise ConfigurationError("Launch timeout and polling intervals must be positive")

        if self.render_wait_timeout is not None and self.render_wait_timeout <= 0:
            raise ConfigurationError("Render wait timeout must be positive or None")

        if not 1 <= self.max_slice_bytes <= MAX_CHUNK_BYTES:
            raise ConfigurationError(f"Slice size must be between 1 and {MAX_CHUNK_BYTES}")

        if self.slice_delay < 0 or self.pump_poll_interval <= 0:
            raise ConfigurationError("Pump delays must be non-negative")


@dataclass
class RendererConfig:
    """Input format assumed by the reference renderer for streamed PCM"""

    input_channels: int = 2
    input_bit_depth: int = DEFAULT_BIT_DEPTH
    sample_rate: int = DEFAULT_SAMPLE_RATE

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.input_channels < 1:
            raise ConfigurationError("Input channels must be at least 1")

        if self.input_bit_depth not in SUPPORTED_BIT_DEPTHS:
            raise ConfigurationError(f"Bit depth {self.input_bit_depth} not supported. Use one of: {SUPPORTED_BIT_DEPTHS}")

        if self.sample_rate <= 0:
            raise ConfigurationError("Sample rate must be positive")


@dataclass
class BridgeConfig:
    """Complete configuration for both ends of the pipe"""

    producer: ProducerConfig = field(default_factory=ProducerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for serialization"""
        return {
            'producer': asdict(self.producer),
            'server': asdict(self.server),
            'renderer': asdict(self.renderer),
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'BridgeConfig':
        """Create configuration from dictionary"""
        try:
            return cls(
                producer=ProducerConfig(**config_dict.get('producer', {})),
                server=ServerConfig(**config_dict.get('server', {})),
                renderer=RendererConfig(**config_dict.get('renderer', {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}") from e

    def save(self, file_path: str) -> None:
        """Save configuration to file"""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, file_path: str) -> 'BridgeConfig':
        """Load configuration from file"""
        with open(file_path, 'r') as f:
            return cls.from_dict(json.load(f))


# Create a default configuration
default_config = BridgeConfig()
