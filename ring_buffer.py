"""Single-producer/single-consumer ring buffer for normalized audio.

The writer never waits: when the buffer is full the oldest samples are
overwritten. Positions are absolute sample counts that only grow. The writer
announces the end of the region it is about to overwrite (``reserved``)
before copying and publishes ``write_position`` after; the reader copies out
and then re-checks ``reserved`` to detect samples overwritten underneath it.
Neither side takes a lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

_EMPTY = np.zeros(0, dtype=np.float32)


@dataclass(frozen=True)
class StreamGap:
    lost_samples: int
    resync_position: int


class RingBuffer:
    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._buffer = np.zeros(capacity, dtype=np.float32)
        self._write_pos = 0
        self._reserved = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def write_position(self) -> int:
        return self._write_pos

    @property
    def reserved(self) -> int:
        return self._reserved

    def write(self, samples: np.ndarray) -> int:
        """Append samples and return how many previously held samples were evicted."""
        count = len(samples)
        if count == 0:
            return 0
        data = np.asarray(samples, dtype=np.float32)
        if count > self._capacity:
            data = data[-self._capacity:]
        held = min(self._write_pos, self._capacity)
        evicted = min(held, max(0, held + count - self._capacity))

        self._reserved = self._write_pos + count
        start = self._write_pos + (count - len(data))
        index = start % self._capacity
        first = min(len(data), self._capacity - index)
        self._buffer[index:index + first] = data[:first]
        if first < len(data):
            self._buffer[:len(data) - first] = data[first:]
        self._write_pos += count
        return evicted

    def copy_out(self, position: int, count: int) -> np.ndarray:
        index = position % self._capacity
        first = min(count, self._capacity - index)
        out = np.empty(count, dtype=np.float32)
        out[:first] = self._buffer[index:index + first]
        if first < count:
            out[first:] = self._buffer[:count - first]
        return out

    def latest(self, count: int) -> np.ndarray:
        """The most recent ``count`` samples still held, oldest first."""
        count = min(count, self._capacity, self._write_pos)
        return self.copy_out(self._write_pos - count, count)


class RingCursor:
    """Consumer-side read position into a :class:`RingBuffer`."""

    def __init__(self, ring: RingBuffer, position: int | None = None) -> None:
        self._ring = ring
        self.position = ring.write_position if position is None else position

    def available(self) -> int:
        return self._ring.write_position - self.position

    def read(self, count: int) -> tuple[Optional[np.ndarray], Optional[StreamGap]]:
        """Read exactly ``count`` samples if available.

        Returns ``(samples, None)`` on success, ``(None, None)`` when not enough
        samples have arrived yet, and ``(None, gap)`` when the writer lapped the
        cursor; the cursor has then been moved to the writer's position.
        """
        gap = self._resync_if_lapped(self._ring.write_position)
        if gap is not None:
            return None, gap
        if self.available() < count:
            return None, None
        data = self._ring.copy_out(self.position, count)
        gap = self._resync_if_lapped(self._ring.reserved)
        if gap is not None:
            return None, gap
        self.position += count
        return data, None

    def read_all(self) -> tuple[np.ndarray, Optional[StreamGap]]:
        count = self.available()
        if count <= 0:
            return _EMPTY, None
        data, gap = self.read(min(count, self._ring.capacity))
        if data is None:
            return _EMPTY, gap
        return data, None

    def _resync_if_lapped(self, end: int) -> Optional[StreamGap]:
        behind = end - self.position
        if behind <= self._ring.capacity:
            return None
        write_pos = self._ring.write_position
        lost = write_pos - self.position
        self.position = write_pos
        return StreamGap(lost_samples=lost, resync_position=write_pos)
