"""
Contract tests for PipelineLifecycleManager.

Most tests drive tick() directly with an injected clock; the supervising
thread is given a long interval so it never ticks on its own. Tests of the
supervising thread itself use a short interval.
"""

import io
import logging
import threading
from unittest.mock import Mock

import pytest

from reencoder.errors import BitrateError, BuildError, FaultKind, RestartBudgetExhausted, StartError
from reencoder.restart import ControllerState, HealthStatus
from reencoder.service import OutputMode, PipelineLifecycleManager
from reencoder.tests.fakes import SlowTeardownStage, StageFactory, wait_until


@pytest.fixture
def waits():
    return []


@pytest.fixture
def output():
    return io.BytesIO()


@pytest.fixture
def make_manager(config, stage_factory, telemetry, clock, waits, output):
    managers = []

    def make(tick_interval=3600.0, **overrides):
        def backoff_wait(delay):
            waits.append(delay)
            return False

        kwargs = dict(
            stage_factory=stage_factory,
            telemetry=telemetry,
            output_stream=output,
            backoff_wait=backoff_wait,
            clock=clock,
            tick_interval=tick_interval,
        )
        kwargs.update(overrides)
        manager = PipelineLifecycleManager(config, **kwargs)
        managers.append(manager)
        return manager

    yield make
    for manager in managers:
        manager.stop()


@pytest.fixture
def manager(make_manager):
    return make_manager()


class TestStart:

    def test_start_builds_activates_and_runs(self, manager, stage_factory):
        manager.start(OutputMode.DIRECT_STREAM)

        assert manager.is_running()
        assert len(stage_factory.stages) == 1
        stage = stage_factory.last
        assert stage.built and stage.is_active
        assert manager.stage is stage
        assert manager.mode is OutputMode.DIRECT_STREAM
        assert manager.bridge.consumer_count == 1

    def test_mode_defaults_to_config(self, manager):
        manager.start()
        assert manager.mode is OutputMode.DIRECT_STREAM

    def test_mode_accepts_string_value(self, manager):
        manager.start("stdout")
        assert manager.mode is OutputMode.DIRECT_STREAM

    def test_build_failure_raises_and_cleans_up(self, make_manager):
        factory = StageFactory(failures=["build"])
        manager = make_manager(stage_factory=factory)

        with pytest.raises(BuildError) as exc_info:
            manager.start()

        assert isinstance(exc_info.value, StartError)
        assert not manager.is_running()
        assert factory.last.teardown_calls == 1

    def test_activate_failure_raises_and_cleans_up(self, make_manager):
        factory = StageFactory(failures=["activate"])
        manager = make_manager(stage_factory=factory)

        with pytest.raises(StartError):
            manager.start()

        assert factory.last.teardown_calls == 1
        assert manager.stage is None

    def test_start_resets_telemetry(self, manager, telemetry, clock):
        telemetry.on_unit_produced()
        clock.advance(30)

        manager.start()

        assert telemetry.frame_count == 0
        assert telemetry.seconds_since_last_frame() == pytest.approx(0.0)

    def test_on_demand_mode_starts_server(self, make_manager):
        server = Mock()
        factory = Mock(return_value=server)
        manager = make_manager(server_factory=factory)

        manager.start(OutputMode.ON_DEMAND_SERVER)

        factory.assert_called_once_with(manager.config, manager.bridge)
        server.start.assert_called_once()
        assert manager.bridge.consumer_count == 0

        manager.stop()
        server.stop.assert_called_once()

    def test_server_failure_becomes_start_error(self, make_manager, stage_factory):
        server = Mock()
        server.start.side_effect = RuntimeError("Failed to attach RTSP server on port 8554")
        manager = make_manager(server_factory=Mock(return_value=server))

        with pytest.raises(StartError):
            manager.start(OutputMode.ON_DEMAND_SERVER)

        assert not manager.is_running()
        assert stage_factory.last.teardown_calls == 1


class TestStop:

    def test_stop_is_idempotent(self, manager, stage_factory, thread_leak_guard):
        manager.start()
        stage = stage_factory.last

        manager.stop()
        manager.stop()

        assert not manager.is_running()
        assert stage.teardown_calls == 1
        assert manager.stage is None

    def test_stop_before_start_is_noop(self, manager):
        manager.stop()
        assert not manager.is_running()

    def test_stop_sets_cancellation_token(self, manager):
        manager.start()
        manager.stop()
        assert manager.stop_event.is_set()

    def test_start_after_shutdown_requested_is_refused(self, make_manager):
        token = threading.Event()
        token.set()
        manager = make_manager(stop_event=token)

        with pytest.raises(StartError):
            manager.start()


class TestDirectStream:

    def test_units_reach_output_stream(self, manager, stage_factory, output):
        manager.start()

        stage_factory.last.produce(b"\x00\x00\x00\x01\x67")
        stage_factory.last.produce(b"\x00\x00\x00\x01\x65")

        assert wait_until(lambda: output.getvalue() == b"\x00\x00\x00\x01\x67\x00\x00\x00\x01\x65")

    def test_output_survives_restart(self, manager, stage_factory, output):
        manager.start()
        stage_factory.last.produce(b"old")
        assert wait_until(lambda: output.getvalue() == b"old")

        stage_factory.last.fault(FaultKind.END_OF_STREAM)
        manager.tick()
        stage_factory.last.produce(b"new")

        assert len(stage_factory.stages) == 2
        assert wait_until(lambda: output.getvalue() == b"oldnew")


class TestBitrate:

    def test_set_bitrate_updates_stage_without_restart(self, manager, stage_factory, telemetry, config):
        manager.start()
        stage = stage_factory.last
        for _ in range(3):
            stage.produce()

        assert manager.set_bitrate(500, 800) is True
        assert manager.set_bitrate(1000, 1500) is True

        assert stage.bitrate_updates == [(500, 800), (1000, 1500)]
        assert telemetry.frame_count == 3
        assert telemetry.restart_count == 0
        assert len(stage_factory.stages) == 1
        assert manager.config.encoder.target_bitrate_kbps == 1000
        assert manager.config.encoder.max_bitrate_kbps == 1500
        # The caller's config is never mutated
        assert config.encoder.target_bitrate_kbps == 1800

    def test_set_bitrate_when_stopped_is_ignored(self, manager):
        assert manager.set_bitrate(500, 800) is False
        assert manager.config.encoder.target_bitrate_kbps == 1800

    def test_invalid_bitrate_rejected(self, manager, stage_factory):
        manager.start()
        with pytest.raises(BitrateError):
            manager.set_bitrate(900, 800)
        assert stage_factory.last.bitrate_updates == []

    def test_rebuilt_stage_keeps_live_bitrate(self, manager, stage_factory):
        manager.start()
        manager.set_bitrate(700, 900)

        stage_factory.last.fault()
        manager.tick()

        rebuilt_config = stage_factory.configs[-1]
        assert rebuilt_config.encoder.target_bitrate_kbps == 700
        assert rebuilt_config.encoder.max_bitrate_kbps == 900


class TestSupervision:

    def test_healthy_tick_does_nothing(self, manager, stage_factory, clock):
        manager.start()
        stage_factory.last.produce()
        clock.advance(5)

        assert manager.tick() is HealthStatus.HEALTHY
        assert len(stage_factory.stages) == 1

    def test_stall_triggers_restart_with_base_backoff(self, manager, stage_factory, telemetry, clock, waits):
        """Produce one unit then stall: at t=11s the watchdog restarts with the base delay."""
        manager.start()
        first = stage_factory.last
        first.produce()

        clock.advance(11)
        status = manager.tick()

        assert status is HealthStatus.UNHEALTHY
        assert waits == [3]
        assert first.teardown_calls == 1
        assert len(stage_factory.stages) == 2
        assert manager.stage is stage_factory.last
        assert stage_factory.last.is_active
        assert telemetry.restart_count == 1
        assert telemetry.frame_count == 0

    def test_no_restart_before_first_unit(self, manager, stage_factory, clock):
        manager.start()
        clock.advance(600)

        assert manager.tick() is HealthStatus.HEALTHY
        assert len(stage_factory.stages) == 1

    def test_fault_triggers_restart(self, manager, stage_factory, telemetry):
        manager.start()
        stage_factory.last.produce()
        stage_factory.last.fault(FaultKind.ERROR, "Internal data stream error.")

        assert manager.tick() is HealthStatus.UNHEALTHY
        assert telemetry.reconnect_count == 1
        assert len(stage_factory.stages) == 2

    def test_failed_rebuild_is_retried_on_next_tick(self, make_manager, clock, waits):
        factory = StageFactory(failures=[None, "build", None])
        manager = make_manager(stage_factory=factory)
        manager.start()
        factory.last.fault()

        manager.tick()
        assert manager.stage is None
        assert manager.restart_controller.state is ControllerState.RESTARTING

        manager.tick()
        assert manager.stage is factory.last
        assert manager.restart_controller.state is ControllerState.HEALTHY
        assert waits == [3, 6]
        assert factory.stages[1].teardown_calls == 1

    def test_budget_exhaustion_raises_from_tick(self, make_manager, config, stage_factory):
        config.resilience.max_pipeline_restarts = 1
        manager = make_manager()
        manager.start()

        stage_factory.last.fault()
        manager.tick()
        stage_factory.last.fault()

        with pytest.raises(RestartBudgetExhausted):
            manager.tick()
        assert len(stage_factory.stages) == 2

    def test_supervisor_stops_system_on_budget_exhaustion(self, make_manager, config, stage_factory,
                                                          thread_leak_guard):
        config.resilience.max_pipeline_restarts = 1
        manager = make_manager(tick_interval=0.02)
        manager.start()

        stage_factory.last.fault()
        assert wait_until(lambda: len(stage_factory.stages) == 2)
        stage_factory.last.fault()

        # Same sequence as the entry point: wake on the token, then stop
        assert manager.stop_event.wait(2.0)
        manager.stop()

        assert not manager.is_running()
        assert manager.failed
        assert all(stage.teardown_calls == 1 for stage in stage_factory.stages)

    def test_stop_waits_for_teardown_started_by_supervisor(self, make_manager, config,
                                                           thread_leak_guard):
        """A second stop() returns only after the supervisor's own stop has torn everything down."""
        config.resilience.max_pipeline_restarts = 1
        stages = []

        def slow_factory(cfg, tel):
            stage = SlowTeardownStage(tel, delay=0.3)
            stages.append(stage)
            return stage

        manager = make_manager(stage_factory=slow_factory, tick_interval=0.02)
        manager.start()

        stages[-1].fault()
        assert wait_until(lambda: len(stages) == 2)
        stages[-1].fault()

        assert manager.stop_event.wait(2.0)
        manager.stop()

        assert stages[-1].teardown_calls == 1
        assert manager.stage is None
        assert manager.bridge.consumer_count == 0

    def test_stats_reported_on_interval(self, make_manager, config, clock, caplog):
        config.stats.enabled = True
        config.stats.interval_s = 5
        manager = make_manager()
        manager.start()

        with caplog.at_level(logging.INFO, logger="reencoder.telemetry"):
            clock.advance(4)
            manager.tick()
            assert not [r for r in caplog.records if "[STATS]" in r.message]
            clock.advance(1)
            manager.tick()

        assert len([r for r in caplog.records if "[STATS]" in r.message]) == 1


class TestSnapshot:

    def test_snapshot_contents(self, manager):
        manager.start()
        manager.set_bitrate(500, 800)

        snap = manager.snapshot()

        assert snap["running"] is True
        assert snap["failed"] is False
        assert snap["mode"] == "stdout"
        assert snap["state"] == "HEALTHY"
        assert snap["bitrate"] == {"target_kbps": 500, "max_kbps": 800}
        assert snap["consumers"] == 1
        assert snap["rtsp_clients"] == 0
        assert snap["telemetry"]["restart_count"] == 0

    def test_snapshot_reports_rtsp_clients(self, make_manager):
        server = Mock()
        server.client_count = 2
        manager = make_manager(server_factory=Mock(return_value=server))
        manager.start(OutputMode.ON_DEMAND_SERVER)

        snap = manager.snapshot()

        assert snap["mode"] == "rtsp"
        assert snap["rtsp_clients"] == 2
