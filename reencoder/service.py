"""
Pipeline lifecycle manager.

Owns the transcode stage, the output bridge, the serving layer and the
supervising thread. The supervising thread ticks once per second:

    1. emit a telemetry line when the reporting interval elapsed
    2. watchdog check (faults, stalls)
    3. on unhealthy, restart with backoff

Exhausting the restart budget stops the whole system and marks it failed.
"""

from __future__ import annotations

import enum
import logging
import sys
import threading
import time
from typing import Any, BinaryIO, Callable, Dict, Optional, Union

from reencoder.bitrate import BitrateController, validate_bitrate
from reencoder.bridge import OutputBridge, StreamConsumer
from reencoder.config import PipelineConfig
from reencoder.control import ControlServer
from reencoder.errors import RestartBudgetExhausted, StartError
from reencoder.restart import HealthStatus, RestartController
from reencoder.stage.base import TranscodeStageAdapter
from reencoder.telemetry import TelemetryRegistry

logger = logging.getLogger(__name__)

TICK_INTERVAL_SEC = 1.0
SUPERVISOR_JOIN_TIMEOUT_SEC = 5.0
STOP_WAIT_TIMEOUT_SEC = 10.0

StageFactory = Callable[[PipelineConfig, TelemetryRegistry], TranscodeStageAdapter]
ServerFactory = Callable[[PipelineConfig, OutputBridge], Any]


class OutputMode(enum.Enum):
    DIRECT_STREAM = "stdout"
    ON_DEMAND_SERVER = "rtsp"


def default_stage_factory(config: PipelineConfig, telemetry: TelemetryRegistry) -> TranscodeStageAdapter:
    from reencoder.stage.gst_stage import GstTranscodeStage

    return GstTranscodeStage(config, telemetry)


def default_server_factory(config: PipelineConfig, bridge: OutputBridge):
    from reencoder.server.rtsp_server import RtspStreamServer

    return RtspStreamServer(config, bridge)


class PipelineLifecycleManager:
    """
    Start/stop/supervise one re-encoding pipeline.

    Args:
        config: Validated configuration. A working copy is kept; live bitrate
                changes update the copy, never the caller's object.
        stage_factory: Creates a fresh stage for every run
        telemetry: Shared registry (a new one if omitted)
        stop_event: Cancellation token shared with the process entry point.
                    Setting it ends the supervising loop and any backoff wait.
        output_stream: Byte stream for direct output (default: stdout)
        server_factory: Creates the on-demand serving layer
        backoff_wait: Override for the backoff wait (default: stop_event.wait)
        clock: Monotonic clock used for the reporting interval
        tick_interval: Seconds between supervising ticks
    """

    def __init__(
        self,
        config: PipelineConfig,
        stage_factory: Optional[StageFactory] = None,
        telemetry: Optional[TelemetryRegistry] = None,
        stop_event: Optional[threading.Event] = None,
        output_stream: Optional[BinaryIO] = None,
        server_factory: Optional[ServerFactory] = None,
        backoff_wait: Optional[Callable[[float], Optional[bool]]] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = TICK_INTERVAL_SEC,
    ) -> None:
        self.config = config.copy()
        self.telemetry = telemetry if telemetry is not None else TelemetryRegistry()
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._stage_factory = stage_factory or default_stage_factory
        self._server_factory = server_factory or default_server_factory
        self._output_stream = output_stream
        self._clock = clock
        self._tick_interval = tick_interval

        self.restart_controller = RestartController(
            base_delay_s=self.config.rtsp.reconnect_delay_s,
            max_restarts=self.config.resilience.max_pipeline_restarts,
            wait=backoff_wait if backoff_wait is not None else self.stop_event.wait,
        )
        self.bitrate = BitrateController()

        self._state_lock = threading.Lock()
        # Guards the stage handle during build/teardown/restart and bitrate changes
        self._stage_lock = threading.Lock()
        self._stage: Optional[TranscodeStageAdapter] = None
        self._bridge: Optional[OutputBridge] = None
        self._server = None
        self._control: Optional[ControlServer] = None
        self._supervisor: Optional[threading.Thread] = None
        self._running = False
        # Set whenever no stop is pending: before start and after a completed stop
        self._stopped = threading.Event()
        self._stopped.set()
        self._mode: Optional[OutputMode] = None
        self._last_report = 0.0
        self.failed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, mode: Optional[Union[OutputMode, str]] = None) -> None:
        """
        Build and activate the stage, set up output, start supervising.

        Args:
            mode: OutputMode or its value; defaults to config.output.mode

        Raises:
            StartError: If the stage or the output layer cannot be brought up
        """
        with self._state_lock:
            if self._running:
                logger.warning("Pipeline already running")
                return
            if self.stop_event.is_set():
                raise StartError("Shutdown already requested")
            try:
                self._mode = OutputMode(mode if mode is not None else self.config.output.mode)
            except ValueError:
                raise StartError(f"Unknown output mode: {mode!r}")
            self._running = True
            self._stopped.clear()

        try:
            with self._stage_lock:
                self._stage = self._create_stage()
            self._bridge = OutputBridge()
            self._bridge.set_stage(self._stage)
            self._start_output()
            if self.config.control.port:
                self._control = ControlServer(self.config.control.host, self.config.control.port, self)
                self._control.start()
        except (StartError, OSError, RuntimeError) as e:
            logger.error(f"Failed to start pipeline: {e}")
            self._release()
            with self._state_lock:
                self._running = False
            self._stopped.set()
            if isinstance(e, StartError):
                raise
            raise StartError(f"Output setup failed: {e}") from e

        self.telemetry.reset()
        self._last_report = self._clock()
        self._supervisor = threading.Thread(target=self._supervise, daemon=True, name="PipelineSupervisor")
        self._supervisor.start()
        logger.info(f"Pipeline running ({self._mode.value} output)")

    def _start_output(self) -> None:
        if self._mode is OutputMode.DIRECT_STREAM:
            stream = self._output_stream if self._output_stream is not None else sys.stdout.buffer
            self._bridge.attach_consumer(StreamConsumer(stream), persistent=True)
        else:
            self._server = self._server_factory(self.config, self._bridge)
            self._server.start()

    def _create_stage(self) -> TranscodeStageAdapter:
        """Build and activate a fresh stage; nothing is left behind on failure."""
        stage = self._stage_factory(self.config, self.telemetry)
        try:
            stage.build()
            stage.activate()
        except StartError:
            stage.teardown()
            raise
        return stage

    def stop(self, timeout: float = STOP_WAIT_TIMEOUT_SEC) -> None:
        """
        Stop everything and wait for feeders and the supervisor. Idempotent.

        A caller that arrives while another stop is in progress (for example
        the supervisor giving up after the last restart) waits for that stop
        to finish, at most `timeout` seconds.
        """
        with self._state_lock:
            first = self._running
            self._running = False

        if not first:
            if threading.current_thread() is self._supervisor:
                return
            if not self._stopped.wait(timeout):
                logger.warning(f"Pipeline stop still in progress after {timeout:.1f}s")
            self._join_supervisor()
            return

        logger.info("Stopping pipeline...")
        self.stop_event.set()
        self._join_supervisor()
        self._release()
        self._stopped.set()
        logger.info("Pipeline stopped")

    def _join_supervisor(self) -> None:
        supervisor = self._supervisor
        if supervisor is None or supervisor is threading.current_thread():
            return
        if supervisor.is_alive():
            supervisor.join(timeout=SUPERVISOR_JOIN_TIMEOUT_SEC)
            if supervisor.is_alive():
                logger.warning("Supervisor thread did not stop within timeout")
                return
        self._supervisor = None

    def _release(self) -> None:
        if self._control is not None:
            self._control.stop()
            self._control = None
        if self._server is not None:
            self._server.stop()
            self._server = None
        if self._bridge is not None:
            self._bridge.stop()
        with self._stage_lock:
            if self._stage is not None:
                self._stage.teardown()
                self._stage = None

    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    @property
    def mode(self) -> Optional[OutputMode]:
        return self._mode

    @property
    def stage(self) -> Optional[TranscodeStageAdapter]:
        with self._stage_lock:
            return self._stage

    @property
    def bridge(self) -> Optional[OutputBridge]:
        return self._bridge

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _supervise(self) -> None:
        logger.info("Supervisor started")
        while not self.stop_event.wait(self._tick_interval):
            try:
                self.tick()
            except RestartBudgetExhausted:
                self.failed = True
                logger.error("Restart budget exhausted, stopping")
                self.stop()
                break
            except Exception as e:
                logger.error(f"Unexpected error in supervising loop: {e}", exc_info=True)
        logger.info("Supervisor stopped")

    def tick(self) -> HealthStatus:
        """
        One supervising iteration.

        Raises:
            RestartBudgetExhausted: If a restart is needed and none are left
        """
        stats = self.config.stats
        now = self._clock()
        if stats.enabled and now - self._last_report >= stats.interval_s:
            self._last_report = now
            self.telemetry.report()

        stage = self.stage
        fault = stage.take_fault() if stage is not None else None
        resilience = self.config.resilience
        status = self.restart_controller.check_health(
            self.telemetry,
            resilience.watchdog_timeout_s,
            fault=fault,
            startup_grace_s=resilience.startup_grace_s,
        )
        if status is HealthStatus.UNHEALTHY:
            self.restart_controller.attempt_restart(self._rebuild, telemetry=self.telemetry)
        return status

    def _rebuild(self) -> None:
        """Tear down the current stage, then build and activate a new one."""
        with self._stage_lock:
            if self._bridge is not None:
                self._bridge.set_stage(None)
            old, self._stage = self._stage, None
            if old is not None:
                old.teardown()
            stage = self._create_stage()
            self._stage = stage
            if self._bridge is not None:
                self._bridge.set_stage(stage)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def set_bitrate(self, target_kbps: int, max_kbps: int) -> bool:
        """
        Change the encoder bitrate without a restart.

        Returns:
            True if applied, False if no stage is active (ignored)

        Raises:
            BitrateError: If the values are out of range
        """
        target, peak = validate_bitrate(target_kbps, max_kbps)
        with self._stage_lock:
            stage = self._stage if self.is_running() else None
            applied = self.bitrate.apply(stage, target, peak)
            if applied:
                self.config.encoder.target_bitrate_kbps = target
                self.config.encoder.max_bitrate_kbps = peak
        if applied:
            logger.info(f"Bitrate set to {target} / {peak} kbps")
        return applied

    def snapshot(self) -> Dict[str, Any]:
        """Status view for the control surface."""
        bridge = self._bridge
        server = self._server
        return {
            "running": self.is_running(),
            "failed": self.failed,
            "mode": self._mode.value if self._mode else None,
            "state": self.restart_controller.state.name,
            "bitrate": {
                "target_kbps": self.config.encoder.target_bitrate_kbps,
                "max_kbps": self.config.encoder.max_bitrate_kbps,
            },
            "consumers": bridge.consumer_count if bridge is not None else 0,
            "rtsp_clients": server.client_count if server is not None else 0,
            "telemetry": self.telemetry.snapshot(advance_window=False).to_dict(),
        }
