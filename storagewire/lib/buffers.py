"""
Byte buffer pool shared between concurrent parsers.

The batch decoder stages every MIME part body in a buffer borrowed from
the pool and hands it back as soon as the part has been consumed.  The
pool is the only shared mutable object of the wire layer, so borrow and
give_back are safe to call from any number of threads without the
borrowers coordinating.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator
from typing import List

log = logging.getLogger(__name__)


class BufferPool:
    """
    A bounded free-list of ``bytearray`` buffers.

    Args:
        buffer_size: Initial capacity of freshly allocated buffers
        max_pooled: How many idle buffers are kept around; extra buffers
            handed back are dropped and left to the garbage collector
    """

    def __init__(self, buffer_size: int = 64 * 1024, max_pooled: int = 16) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if max_pooled < 0:
            raise ValueError("max_pooled can not be negative")
        self.buffer_size = buffer_size
        self.max_pooled = max_pooled
        self._free: List[bytearray] = []
        self._lock = threading.Lock()
        self.outstanding = 0

    def borrow(self) -> bytearray:
        """Return an empty buffer, reusing a pooled one when available."""
        with self._lock:
            self.outstanding += 1
            if self._free:
                return self._free.pop()
        return bytearray()

    def give_back(self, buffer: bytearray) -> None:
        """Clear the buffer and return it to the pool."""
        ## buffers that grew past buffer_size are not worth keeping idle
        oversized = len(buffer) > self.buffer_size
        del buffer[:]
        with self._lock:
            self.outstanding -= 1
            if not oversized and len(self._free) < self.max_pooled:
                self._free.append(buffer)

    @contextmanager
    def borrowed(self) -> Iterator[bytearray]:
        buffer = self.borrow()
        try:
            yield buffer
        finally:
            self.give_back(buffer)

    @property
    def idle(self) -> int:
        with self._lock:
            return len(self._free)
