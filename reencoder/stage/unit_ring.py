"""
Thread-safe, sequence-numbered ring of recently produced units.

This is the fan-out point between the always-on transcode stage and the
feeders. The producer publishes into it without ever blocking; each feeder
reads with its own cursor, so every attached consumer sees every unit that is
still retained. When a reader falls more than `capacity` units behind, it
skips ahead to the oldest retained unit: slow readers drop, the producer never
waits.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ProducedUnit:
    """
    One access unit of compressed output.

    Attributes:
        data: Compressed bytes (immutable, shared by every reader)
        pts: Presentation timestamp in nanoseconds, if known
        sequence: Position in the run, starting at 1
    """
    data: bytes
    pts: Optional[int]
    sequence: int


@dataclass
class UnitRingStats:
    capacity: int
    count: int
    total_published: int
    overflow_count: int
    closed: bool


class UnitRing:
    """
    Bounded ring of ProducedUnit with per-reader cursors.

    publish() never blocks. read_after() waits at most `timeout` seconds.
    close() wakes every waiting reader; after that, reads return whatever is
    still retained and then None.
    """

    def __init__(self, capacity: int = 8) -> None:
        if capacity <= 0:
            raise ValueError(f"UnitRing capacity must be > 0, got {capacity}")
        self._capacity = capacity
        self._units: deque[ProducedUnit] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._next_sequence = 1
        self._total_dropped = 0
        self._closed = False

    def publish(self, data: bytes, pts: Optional[int] = None) -> ProducedUnit:
        """
        Append a unit, dropping the oldest one if the ring is full.

        Raises:
            ValueError: If data is empty
        """
        if not data:
            raise ValueError("Cannot publish an empty unit")

        with self._lock:
            unit = ProducedUnit(data=bytes(data), pts=pts, sequence=self._next_sequence)
            self._next_sequence += 1
            if len(self._units) >= self._capacity:
                self._total_dropped += 1
            self._units.append(unit)
            self._condition.notify_all()
            return unit

    def read_after(self, cursor: int, timeout: Optional[float] = None) -> Optional[ProducedUnit]:
        """
        Return the oldest retained unit whose sequence is greater than `cursor`.

        Args:
            cursor: Sequence of the last unit this reader consumed (0 = none)
            timeout: Seconds to wait for a unit. None or <= 0 returns immediately.

        Returns:
            The unit, or None on timeout or once the ring is closed and drained
        """
        with self._lock:
            unit = self._next_locked(cursor)
            if unit is not None or self._closed:
                return unit
            if timeout is None or timeout <= 0:
                return None

            end = time.monotonic() + timeout
            while True:
                remaining = end - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(timeout=remaining)
                unit = self._next_locked(cursor)
                if unit is not None or self._closed:
                    return unit

    def _next_locked(self, cursor: int) -> Optional[ProducedUnit]:
        if not self._units or self._units[-1].sequence <= cursor:
            return None
        oldest = self._units[0].sequence
        if cursor < oldest:
            return self._units[0]
        return self._units[cursor - oldest + 1]

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._next_sequence - 1

    def stats(self) -> UnitRingStats:
        with self._lock:
            return UnitRingStats(
                capacity=self._capacity,
                count=len(self._units),
                total_published=self._next_sequence - 1,
                overflow_count=self._total_dropped,
                closed=self._closed,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._units)
