"""
Real-time statistics for the re-encoder.

TelemetryRegistry is updated from the stage's producing thread on every unit
and read from the supervising loop, the feeders and the control surface.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetrySnapshot:
    """
    Point-in-time view of the registry.

    Attributes:
        uptime_s: Seconds since the process started
        frame_count: Units produced during the current run
        fps: Units per second since the previous windowed snapshot
        seconds_since_last_frame: Time since the last unit (or since the run started)
        reconnect_count: Lifetime count of stage faults (error/EOS)
        restart_count: Lifetime count of stage restarts
    """
    uptime_s: float
    frame_count: int
    fps: float
    seconds_since_last_frame: float
    reconnect_count: int
    restart_count: int

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    def format_line(self) -> str:
        return (
            f"[STATS] uptime={format_uptime(self.uptime_s)}"
            f" | frames={self.frame_count}"
            f" | fps={self.fps:.1f}"
            f" | last_frame={self.seconds_since_last_frame:.1f}s ago"
            f" | reconnects={self.reconnect_count}"
            f" | restarts={self.restart_count}"
        )


def format_uptime(seconds: float) -> str:
    elapsed = int(seconds)
    hours, rem = divmod(elapsed, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class TelemetryRegistry:
    """
    Thread-safe counters and derived liveness metrics.

    Per-run counters (frame count, last unit time, run start, fps window) are
    cleared by reset() at every (re)start. Reconnect and restart counts are
    lifetime counters so that repeated restarts remain visible.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        now = clock()
        self._process_start = now
        self._run_start = now
        self._frame_count = 0
        self._last_frame_time: Optional[float] = None
        self._reconnect_count = 0
        self._restart_count = 0
        self._fps_frame_count = 0
        self._fps_time: Optional[float] = None

    def reset(self) -> None:
        """Clear per-run counters. Called when the stage (re)starts."""
        with self._lock:
            self._run_start = self._clock()
            self._frame_count = 0
            self._last_frame_time = None
            self._fps_frame_count = 0
            self._fps_time = None

    def on_unit_produced(self) -> None:
        with self._lock:
            self._frame_count += 1
            self._last_frame_time = self._clock()

    def on_reconnect(self) -> None:
        with self._lock:
            self._reconnect_count += 1

    def on_restart(self) -> None:
        with self._lock:
            self._restart_count += 1

    @property
    def frame_count(self) -> int:
        with self._lock:
            return self._frame_count

    @property
    def reconnect_count(self) -> int:
        with self._lock:
            return self._reconnect_count

    @property
    def restart_count(self) -> int:
        with self._lock:
            return self._restart_count

    def seconds_since_last_frame(self) -> float:
        """Time since the last unit; before the first unit, time since the run started."""
        with self._lock:
            return self._since_last_locked(self._clock())

    def seconds_since_run_start(self) -> float:
        with self._lock:
            return self._clock() - self._run_start

    def uptime(self) -> float:
        return self._clock() - self._process_start

    def _since_last_locked(self, now: float) -> float:
        if self._last_frame_time is None:
            return now - self._run_start
        return now - self._last_frame_time

    def snapshot(self, advance_window: bool = True) -> TelemetrySnapshot:
        """
        Capture current metrics.

        Args:
            advance_window: If True, the fps window restarts at this snapshot
                            (periodic reporting). Read-only observers such as
                            the status endpoint pass False.
        """
        with self._lock:
            now = self._clock()
            fps = 0.0
            if self._fps_time is not None:
                dt = now - self._fps_time
                if dt > 0.0:
                    fps = (self._frame_count - self._fps_frame_count) / dt
            if advance_window:
                self._fps_frame_count = self._frame_count
                self._fps_time = now
            return TelemetrySnapshot(
                uptime_s=now - self._process_start,
                frame_count=self._frame_count,
                fps=fps,
                seconds_since_last_frame=self._since_last_locked(now),
                reconnect_count=self._reconnect_count,
                restart_count=self._restart_count,
            )

    def report(self, prefix: str = "") -> TelemetrySnapshot:
        """Log a snapshot line and return it."""
        snap = self.snapshot()
        logger.info(f"{prefix}{snap.format_line()}")
        return snap
