"""Exclusive port allocation over an inclusive integer range."""

from __future__ import annotations

import threading

from kubebind.core.errors import (
    PortConflictError,
    PortExhaustedError,
    PortOutOfRangeError,
)
from kubebind.datastructures.type_aliases import PortNumber


class PortBitmap:
    """Thread-safe bitmap of allocated ports in ``[start, end]``.

    The bitmap is a cache of what the live BoundEndpoints hold; the poller
    rebuilds it from the cluster on every pass and never persists it.
    ``set_any`` hands out the lowest free port.
    """

    def __init__(self, start: PortNumber, end: PortNumber) -> None:
        if start > end:
            raise ValueError(f"invalid port range [{start}, {end}]")
        self.start = start
        self.end = end
        self._size = end - start + 1
        self._bits = bytearray(self._size)
        self._allocated = 0
        self._lock = threading.Lock()

    def _offset(self, port: PortNumber) -> int:
        if not self.start <= port <= self.end:
            raise PortOutOfRangeError(port, self.start, self.end)
        return port - self.start

    def set(self, port: PortNumber) -> None:
        """Mark ``port`` allocated; raises ``PortConflictError`` if it already is."""
        with self._lock:
            offset = self._offset(port)
            if self._bits[offset]:
                raise PortConflictError(port)
            self._bits[offset] = 1
            self._allocated += 1

    def set_any(self) -> PortNumber:
        """Allocate and return the next free port."""
        with self._lock:
            if self._allocated >= self._size:
                raise PortExhaustedError(self.start, self.end)
            offset = self._bits.find(0)
            if offset >= 0:
                self._bits[offset] = 1
                self._allocated += 1
                return self.start + offset
            raise PortExhaustedError(self.start, self.end)

    def is_set(self, port: PortNumber) -> bool:
        with self._lock:
            return bool(self._bits[self._offset(port)])

    def unset(self, port: PortNumber) -> None:
        """Release ``port``. Releasing a free port is a no-op."""
        with self._lock:
            offset = self._offset(port)
            if self._bits[offset]:
                self._bits[offset] = 0
                self._allocated -= 1

    def num_free(self) -> int:
        with self._lock:
            return self._size - self._allocated

    def allocated(self) -> list[PortNumber]:
        with self._lock:
            return [self.start + i for i, bit in enumerate(self._bits) if bit]

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end and self.is_set(port)

    def __repr__(self) -> str:
        return f"PortBitmap([{self.start}, {self.end}], free={self.num_free()})"
