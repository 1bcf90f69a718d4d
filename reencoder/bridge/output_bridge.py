"""
Output bridge between the transcode stage and downstream consumers.

The stage runs at the encoder's fixed cadence and cannot be paused, so each
consumer gets its own feeder thread reading the stage's unit ring with its own
cursor. A slow consumer only falls behind (and skips units); a dead one is
detached. Neither can block the stage or another consumer.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from reencoder.bridge.consumers import Consumer
from reencoder.errors import ConsumerForwardError
from reencoder.stage.base import TranscodeStageAdapter

logger = logging.getLogger(__name__)

# Upper bound on a single pull, so feeders notice stop and stage changes promptly
FEEDER_POLL_INTERVAL_SEC = 0.1

FEEDER_JOIN_TIMEOUT_SEC = 2.0


@dataclass(frozen=True)
class ConsumerHandle:
    id: int
    name: str


class _Feeder(threading.Thread):
    """
    Forwards units from the current stage to one consumer.

    A non-persistent feeder is bound to the stage that was current when it was
    attached and exits when that stage goes away. A persistent feeder (direct
    output) follows the bridge to each new stage instead.
    """

    def __init__(
        self,
        bridge: "OutputBridge",
        handle: ConsumerHandle,
        consumer: Consumer,
        stage: Optional[TranscodeStageAdapter],
        persistent: bool,
        poll_interval: float,
    ) -> None:
        super().__init__(name=f"Feeder-{handle.name}-{handle.id}", daemon=True)
        self.bridge = bridge
        self.handle = handle
        self.consumer = consumer
        self.persistent = persistent
        self.stop_event = threading.Event()
        self.delivered = 0
        self.exit_reason = ""
        self.consumer_closed = False
        self._stage = stage
        self._poll_interval = poll_interval

    def run(self) -> None:
        logger.info(f"Feeder started for {self.handle.name}#{self.handle.id}")
        reason = "stopped"
        cursor = 0
        try:
            while not self.stop_event.is_set():
                current = self.bridge.current_stage()
                if current is not self._stage:
                    if not self.persistent:
                        reason = "stage replaced"
                        break
                    self._stage = current
                    cursor = 0

                stage = self._stage
                if stage is None:
                    if not self.persistent:
                        reason = "no active stage"
                        break
                    self.stop_event.wait(self._poll_interval)
                    continue

                unit = stage.pull_next(cursor, self._poll_interval)
                if unit is None:
                    if not stage.is_active and not self.persistent:
                        reason = "stage stopped"
                        break
                    if not stage.is_active:
                        # Torn down and drained; wait for the bridge to move on
                        self.stop_event.wait(self._poll_interval)
                    continue

                cursor = unit.sequence
                try:
                    self.consumer.send(unit)
                except ConsumerForwardError as e:
                    logger.warning(f"Forward to {self.handle.name}#{self.handle.id} failed: {e}")
                    reason = "forward failed"
                    break
                self.delivered += 1
        except Exception as e:
            logger.error(f"Unexpected error in feeder {self.name}: {e}", exc_info=True)
            reason = f"error: {e}"
        finally:
            self.exit_reason = reason
            logger.info(f"Feeder stopped for {self.handle.name}#{self.handle.id} ({reason})")
            self.bridge._on_feeder_exit(self)


class OutputBridge:
    """
    Tracks attached consumers and their feeder threads.

    Thread-safe: attach/detach may be called from serving-layer threads while
    the supervising loop swaps stages.
    """

    def __init__(self, poll_interval: float = FEEDER_POLL_INTERVAL_SEC) -> None:
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._feeders: Dict[int, _Feeder] = {}
        self._ids = itertools.count(1)
        self._stage: Optional[TranscodeStageAdapter] = None
        self._stopped = False

    def set_stage(self, stage: Optional[TranscodeStageAdapter]) -> None:
        """Make `stage` the source for new and persistent feeders (None while restarting)."""
        with self._lock:
            self._stage = stage

    def current_stage(self) -> Optional[TranscodeStageAdapter]:
        with self._lock:
            return self._stage

    def attach_consumer(self, consumer: Consumer, persistent: bool = False) -> ConsumerHandle:
        """
        Start a feeder for `consumer`.

        Args:
            consumer: Downstream sink
            persistent: Keep the feeder across stage restarts (direct output)

        Raises:
            RuntimeError: If the bridge has been stopped
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("OutputBridge is stopped")
            handle = ConsumerHandle(id=next(self._ids), name=consumer.name)
            feeder = _Feeder(
                bridge=self,
                handle=handle,
                consumer=consumer,
                stage=self._stage,
                persistent=persistent,
                poll_interval=self._poll_interval,
            )
            self._feeders[handle.id] = feeder
        logger.info(f"Consumer attached: {handle.name}#{handle.id}")
        feeder.start()
        return handle

    def detach(self, handle: ConsumerHandle, timeout: float = FEEDER_JOIN_TIMEOUT_SEC) -> None:
        """Stop the consumer's feeder, wait for it, and close the consumer. Idempotent."""
        with self._lock:
            feeder = self._feeders.pop(handle.id, None)
        if feeder is None:
            return
        self._finish(feeder, timeout)
        logger.info(f"Consumer detached: {handle.name}#{handle.id}")

    def is_active(self, handle: ConsumerHandle) -> bool:
        with self._lock:
            feeder = self._feeders.get(handle.id)
        # Not yet started counts as active
        return feeder is not None and (feeder.is_alive() or feeder.ident is None)

    def delivered(self, handle: ConsumerHandle) -> int:
        """Units forwarded to this consumer so far; 0 once it has been detached."""
        with self._lock:
            feeder = self._feeders.get(handle.id)
        return feeder.delivered if feeder is not None else 0

    @property
    def consumer_count(self) -> int:
        with self._lock:
            return len(self._feeders)

    def stop(self, timeout: float = FEEDER_JOIN_TIMEOUT_SEC) -> None:
        """Stop and join every feeder. No new consumers are accepted afterwards."""
        with self._lock:
            self._stopped = True
            feeders = list(self._feeders.values())
            self._feeders.clear()
        for feeder in feeders:
            feeder.stop_event.set()
        for feeder in feeders:
            self._finish(feeder, timeout)
        if feeders:
            logger.info(f"All consumers detached ({len(feeders)})")

    def _finish(self, feeder: _Feeder, timeout: float) -> None:
        feeder.stop_event.set()
        if feeder is not threading.current_thread() and feeder.is_alive():
            feeder.join(timeout=timeout)
            if feeder.is_alive():
                logger.warning(f"{feeder.name} did not stop within {timeout:.1f}s")
        self._close_consumer(feeder)

    def _on_feeder_exit(self, feeder: _Feeder) -> None:
        with self._lock:
            owned = self._feeders.get(feeder.handle.id) is feeder
        if not owned:
            return
        # The feeder ended on its own; the handle stays registered until the consumer is closed
        self._close_consumer(feeder)
        with self._lock:
            if self._feeders.get(feeder.handle.id) is not feeder:
                return
            del self._feeders[feeder.handle.id]
        logger.info(f"Consumer detached: {feeder.handle.name}#{feeder.handle.id}")

    def _close_consumer(self, feeder: _Feeder) -> None:
        with self._lock:
            if feeder.consumer_closed:
                return
            feeder.consumer_closed = True
        try:
            feeder.consumer.close()
        except Exception as e:
            logger.warning(f"Error closing consumer {feeder.handle.name}#{feeder.handle.id}: {e}")
