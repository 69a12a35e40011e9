"""
Byte Queue Module

This module contains the unbounded FIFO byte queue used as the input and
output boundary of a render session. One thread writes, one thread reads.

Queues of the same session share a single condition variable, so a waiter
can express a predicate over both boundaries (for example "enough output
is pending, or the renderer is starved for input") without spinning.
"""

import collections
import threading
from typing import Deque, Optional, Callable


class ByteQueue:
    """
    Thread-safe first-in-first-out byte queue.

    Reads never block in take(); read() blocks like a file until the requested
    number of bytes is available or the queue is closed. Closing the queue
    marks the end of the data: readers drain what is left, then see EOF.
    """

    def __init__(self, condition: Optional[threading.Condition] = None):
        """
        Initialize the queue.

        Args:
            condition: Condition shared with sibling queues; a new one if None
        """
        self.condition = condition or threading.Condition()
        self._chunks: Deque[bytes] = collections.deque()
        self._length = 0
        self._closed = False

        # Blocking reader bookkeeping, used to detect starvation
        self._waiting = False
        self._wanted = 0

        self.bytes_written = 0
        self.bytes_read = 0

    def __len__(self) -> int:
        with self.condition:
            return self._length

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def starved(self) -> bool:
        """True while a blocking reader waits for more data than is buffered."""
        with self.condition:
            return self._waiting and self._length < self._wanted

    def write(self, data: bytes) -> int:
        """
        Append bytes to the queue.

        Returns:
            Number of bytes written

        Raises:
            ValueError: If the queue is closed
        """
        if not data:
            return 0
        with self.condition:
            if self._closed:
                raise ValueError("write to closed ByteQueue")
            self._chunks.append(bytes(data))
            self._length += len(data)
            self.bytes_written += len(data)
            self.condition.notify_all()
        return len(data)

    def _pop(self, size: int) -> bytes:
        # Caller holds the condition
        size = min(size, self._length)
        parts = []
        remaining = size
        while remaining:
            chunk = self._chunks[0]
            if len(chunk) <= remaining:
                parts.append(self._chunks.popleft())
                remaining -= len(chunk)
            else:
                parts.append(chunk[:remaining])
                self._chunks[0] = chunk[remaining:]
                remaining = 0
        self._length -= size
        self.bytes_read += size
        return b''.join(parts)

    def take(self, size: int) -> bytes:
        """Remove and return up to size bytes without blocking."""
        with self.condition:
            data = self._pop(size)
            if data:
                self.condition.notify_all()
            return data

    def read(self, size: int = -1) -> bytes:
        """
        Block until size bytes are available or the queue is closed.

        Args:
            size: Bytes wanted; negative reads until the queue is closed

        Returns:
            The bytes read; shorter than size only once the queue is closed
        """
        with self.condition:
            if size < 0:
                self._wait_until(lambda: self._closed, wanted=float('inf'))
                return self._pop(self._length)
            self._wait_until(lambda: self._closed or self._length >= size, wanted=size)
            data = self._pop(size)
            self.condition.notify_all()
            return data

    def _wait_until(self, predicate: Callable[[], bool], wanted) -> None:
        if predicate():
            return
        self._waiting = True
        self._wanted = wanted
        self.condition.notify_all()
        try:
            self.condition.wait_for(predicate)
        finally:
            self._waiting = False
            self._wanted = 0

    def wait_for(self, predicate: Callable[[], bool], timeout: Optional[float] = None) -> bool:
        """
        Wait on the shared condition until predicate() holds.

        Returns:
            The last value of the predicate
        """
        with self.condition:
            return self.condition.wait_for(predicate, timeout)

    def close(self) -> None:
        """Mark the end of the data and wake every waiter."""
        with self.condition:
            self._closed = True
            self.condition.notify_all()

    def clear(self) -> None:
        """Drop all buffered bytes."""
        with self.condition:
            self._chunks.clear()
            self._length = 0
            self.condition.notify_all()
