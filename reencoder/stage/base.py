"""
Base interface for transcode stages.

A stage owns one instance of the opaque hardware pipeline: compressed input in,
compressed access units out. A fresh stage object is created for every run;
restarts tear the old one down before the new one is built.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from reencoder.errors import FaultKind, RuntimeFault
from reencoder.stage.unit_ring import ProducedUnit, UnitRing
from reencoder.telemetry import TelemetryRegistry

logger = logging.getLogger(__name__)

DEFAULT_RING_CAPACITY = 8


class FaultSignal:
    """
    One-shot fault flag set by the stage and taken by the supervising loop.

    Only the first fault since the last take() is kept.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fault: Optional[RuntimeFault] = None

    def set(self, fault: RuntimeFault) -> bool:
        """Record a fault. Returns False if one was already pending."""
        with self._lock:
            if self._fault is not None:
                return False
            self._fault = fault
            return True

    def take(self) -> Optional[RuntimeFault]:
        with self._lock:
            fault, self._fault = self._fault, None
            return fault

    def is_set(self) -> bool:
        with self._lock:
            return self._fault is not None


class TranscodeStageAdapter(ABC):
    """
    Boundary to the hardware transcode pipeline.

    Subclasses implement build/activate/teardown/update_bitrate and call
    _publish() for every produced access unit and _signal_fault() for every
    fatal error or end-of-stream. Everything else (unit fan-out, liveness
    accounting, fault hand-off) lives here.

    Lifecycle: build() -> activate() -> ... -> teardown(). Callers must call
    teardown() on any failure after build() started.
    """

    def __init__(self, telemetry: TelemetryRegistry, ring_capacity: int = DEFAULT_RING_CAPACITY) -> None:
        self.telemetry = telemetry
        self._ring = UnitRing(capacity=ring_capacity)
        self._faults = FaultSignal()
        self._active = threading.Event()

    @abstractmethod
    def build(self) -> None:
        """
        Assemble the chain.

        Raises:
            BuildError: If an element is missing or a link fails. No partial
                        state is retained.
        """

    @abstractmethod
    def activate(self) -> None:
        """
        Bring the assembled chain to the running state.

        Raises:
            ActivateError: If the chain does not start
        """

    @abstractmethod
    def update_bitrate(self, target_kbps: int, max_kbps: int) -> None:
        """Apply a new bitrate to the running encoder without a rebuild."""

    @abstractmethod
    def teardown(self) -> None:
        """Release every resource. Idempotent."""

    @property
    def is_active(self) -> bool:
        return self._active.is_set()

    def _mark_active(self) -> None:
        self._active.set()

    def _mark_inactive(self) -> None:
        self._active.clear()
        self._ring.close()

    def pull_next(self, cursor: int, timeout: float) -> Optional[ProducedUnit]:
        """
        Next unit after `cursor`, waiting at most `timeout` seconds.

        Returns None on timeout, and immediately once the stage is torn down
        and every retained unit has been read.
        """
        return self._ring.read_after(cursor, timeout)

    def take_fault(self) -> Optional[RuntimeFault]:
        """Take the pending asynchronous fault, if any."""
        return self._faults.take()

    @property
    def ring(self) -> UnitRing:
        return self._ring

    def _publish(self, data: bytes, pts: Optional[int] = None) -> Optional[ProducedUnit]:
        if not data:
            return None
        unit = self._ring.publish(data, pts)
        self.telemetry.on_unit_produced()
        return unit

    def _signal_fault(self, kind: FaultKind, message: str = "") -> None:
        self.telemetry.on_reconnect()
        if self._faults.set(RuntimeFault(kind, message)):
            logger.warning(f"Stage fault recorded: {kind.value} {message}".rstrip())
