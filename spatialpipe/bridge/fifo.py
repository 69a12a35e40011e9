"""
FIFO Relay Module

Copies rendered PCM from a byte source (normally the producer's stdout piped
into this process) into a named pipe read by a playback or distribution
server.
"""

import logging
import os
import time
from typing import BinaryIO

from .exceptions import EndpointNotFound

# Set up logging
logger = logging.getLogger(__name__)

BUFFER_SIZE = 8192


def wait_for_path(path: str, timeout: float = 3.0, interval: float = 0.1) -> None:
    """
    Wait for a FIFO to be created by its reader.

    Raises:
        EndpointNotFound: If the path does not appear in time
    """
    deadline = time.monotonic() + timeout
    while not os.path.exists(path):
        if time.monotonic() >= deadline:
            raise EndpointNotFound(f"FIFO not found: {path}")
        time.sleep(interval)


def relay(source: BinaryIO, fifo_path: str, timeout: float = 3.0) -> int:
    """
    Copy source into the FIFO until the source closes.

    Opening the FIFO blocks until its reader has opened it.

    Returns:
        Number of bytes relayed
    """
    wait_for_path(fifo_path, timeout)
    logger.info(f"Opening FIFO for writing: {fifo_path}")

    total = 0
    reads = 0
    read = getattr(source, 'read1', source.read)
    with open(fifo_path, 'wb') as fifo:
        logger.info("FIFO opened, starting data transfer")
        while True:
            data = read(BUFFER_SIZE)
            if not data:
                break
            fifo.write(data)
            fifo.flush()
            total += len(data)
            reads += 1
            if reads == 1:
                logger.info(f"First chunk: {len(data)} bytes")

    logger.info(f"Transfer complete: {total} bytes in {reads} reads")
    return total
