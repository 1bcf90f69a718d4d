"""
Watchdog and restart policy.

    HEALTHY -> UNHEALTHY -> RESTARTING -> HEALTHY
                                       -> FAILED (terminal)

The controller only decides; the lifecycle manager supplies the rebuild
function and runs everything on its supervising thread.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional

from reencoder.errors import RestartBudgetExhausted, RuntimeFault, StartError
from reencoder.telemetry import TelemetryRegistry

logger = logging.getLogger(__name__)

MAX_BACKOFF_SEC = 30.0


class HealthStatus(enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ControllerState(enum.Enum):
    """Restart controller state."""
    HEALTHY = 1
    UNHEALTHY = 2
    RESTARTING = 3
    FAILED = 4


class RestartController:
    """
    Decides when the stage is dead and throttles rebuilds with exponential backoff.

    Args:
        base_delay_s: First backoff delay, restored after every successful restart
        max_restarts: Restart budget (0 = unlimited)
        cap_s: Upper bound on the backoff delay
        wait: Called with the backoff delay before each rebuild. A truthy return
              value means shutdown was requested and the rebuild is skipped
              (threading.Event.wait fits).
    """

    def __init__(
        self,
        base_delay_s: float,
        max_restarts: int = 0,
        cap_s: float = MAX_BACKOFF_SEC,
        wait: Optional[Callable[[float], Optional[bool]]] = None,
    ) -> None:
        self._base_delay = float(base_delay_s)
        self._max_restarts = max_restarts
        self._cap = float(cap_s)
        self._wait = wait if wait is not None else time.sleep
        self._lock = threading.Lock()
        self._state = ControllerState.HEALTHY
        self._backoff = self._base_delay
        self._restarts = 0
        self.last_reason = ""

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._state

    @property
    def current_backoff(self) -> float:
        with self._lock:
            return self._backoff

    @property
    def restarts_so_far(self) -> int:
        with self._lock:
            return self._restarts

    @property
    def max_restarts(self) -> int:
        return self._max_restarts

    def _set_state(self, new_state: ControllerState) -> None:
        with self._lock:
            old_state, self._state = self._state, new_state
        if old_state != new_state:
            logger.debug(f"Restart controller: {old_state.name} -> {new_state.name}")

    def check_health(
        self,
        telemetry: TelemetryRegistry,
        timeout_s: float,
        fault: Optional[RuntimeFault] = None,
        startup_grace_s: float = 0,
    ) -> HealthStatus:
        """
        Watchdog check, run once per supervising tick.

        Unhealthy when the stage reported a fault, when a previous restart
        attempt left no running stage, or when units have been produced and
        the last one is older than `timeout_s`. A run that has produced
        nothing is presumed to be starting up unless `startup_grace_s` > 0
        and has elapsed.
        """
        state = self.state
        if state == ControllerState.FAILED:
            return HealthStatus.UNHEALTHY

        reason = None
        if fault is not None:
            reason = f"stage fault ({fault})"
        elif state == ControllerState.RESTARTING:
            reason = "previous restart attempt failed"
        elif telemetry.frame_count > 0:
            elapsed = telemetry.seconds_since_last_frame()
            if elapsed > timeout_s:
                reason = f"no frames for {elapsed:.1f}s"
        elif startup_grace_s > 0:
            elapsed = telemetry.seconds_since_run_start()
            if elapsed > startup_grace_s:
                reason = f"no first frame within {elapsed:.1f}s"

        if reason is None:
            if state == ControllerState.UNHEALTHY:
                self._set_state(ControllerState.HEALTHY)
            return HealthStatus.HEALTHY

        self.last_reason = reason
        if state == ControllerState.HEALTHY:
            self._set_state(ControllerState.UNHEALTHY)
        logger.warning(f"[WATCHDOG] Pipeline unhealthy: {reason}")
        return HealthStatus.UNHEALTHY

    def attempt_restart(
        self,
        rebuild_fn: Callable[[], None],
        telemetry: Optional[TelemetryRegistry] = None,
    ) -> bool:
        """
        Sleep the current backoff, then rebuild.

        Args:
            rebuild_fn: Tears down the old stage and builds/activates a new one.
                        Raises StartError on failure.
            telemetry: Restart counter to bump, and per-run counters to reset
                       once the new stage is up

        Returns:
            True if the new stage is running, False if the rebuild failed or
            was cancelled (the controller stays RESTARTING and the next check
            reports unhealthy again)

        Raises:
            RestartBudgetExhausted: If the budget is used up. No rebuild is attempted.
        """
        with self._lock:
            if self._max_restarts > 0 and self._restarts >= self._max_restarts:
                self._state = ControllerState.FAILED
                exhausted = RestartBudgetExhausted(self._restarts, self._max_restarts)
            else:
                exhausted = None
                self._restarts += 1
                attempt = self._restarts
                delay = self._backoff
                self._backoff = min(self._backoff * 2, self._cap)
                self._state = ControllerState.RESTARTING

        if exhausted is not None:
            logger.error(f"{exhausted}. Giving up.")
            raise exhausted

        if telemetry is not None:
            telemetry.on_restart()

        budget = str(self._max_restarts) if self._max_restarts > 0 else "unlimited"
        logger.warning(f"Restarting pipeline (attempt {attempt}/{budget}) in {delay:.0f}s...")

        if self._wait(delay):
            logger.info("Restart cancelled: shutdown requested")
            return False

        try:
            rebuild_fn()
        except StartError as e:
            logger.error(f"Pipeline restart failed: {e}")
            return False

        with self._lock:
            self._backoff = self._base_delay
            self._state = ControllerState.HEALTHY
        if telemetry is not None:
            telemetry.reset()
        logger.info("Pipeline restarted successfully")
        return True
