"""
Contract tests for RestartController: watchdog rules, backoff law, budget.
"""

from unittest.mock import Mock

import pytest

from reencoder.errors import BuildError, FaultKind, RestartBudgetExhausted, RuntimeFault, StageKind
from reencoder.restart import ControllerState, HealthStatus, RestartController


def _failing_rebuild():
    raise BuildError(StageKind.ACQUISITION, "element not available", element="rtspsrc")


@pytest.fixture
def waits():
    return []


@pytest.fixture
def controller(waits):
    def wait(delay):
        waits.append(delay)
        return False
    return RestartController(base_delay_s=1, max_restarts=0, cap_s=8, wait=wait)


class TestCheckHealth:

    def test_never_unhealthy_before_first_unit(self, controller, telemetry, clock):
        clock.advance(10_000)

        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.HEALTHY
        assert controller.state is ControllerState.HEALTHY

    def test_unhealthy_after_timeout_since_last_unit(self, controller, telemetry, clock):
        telemetry.on_unit_produced()
        clock.advance(11)

        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.UNHEALTHY
        assert controller.state is ControllerState.UNHEALTHY
        assert "no frames" in controller.last_reason

    def test_exactly_at_timeout_is_healthy(self, controller, telemetry, clock):
        telemetry.on_unit_produced()
        clock.advance(10)

        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.HEALTHY

    def test_recovers_to_healthy_when_units_resume(self, controller, telemetry, clock):
        telemetry.on_unit_produced()
        clock.advance(11)
        controller.check_health(telemetry, timeout_s=10)

        telemetry.on_unit_produced()

        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.HEALTHY
        assert controller.state is ControllerState.HEALTHY

    def test_startup_grace_bounds_first_unit(self, controller, telemetry, clock):
        clock.advance(16)

        assert controller.check_health(telemetry, timeout_s=10, startup_grace_s=15) is HealthStatus.UNHEALTHY
        assert "first frame" in controller.last_reason

    def test_within_startup_grace_is_healthy(self, controller, telemetry, clock):
        clock.advance(14)

        assert controller.check_health(telemetry, timeout_s=10, startup_grace_s=15) is HealthStatus.HEALTHY

    def test_fault_is_unhealthy_even_with_fresh_units(self, controller, telemetry):
        telemetry.on_unit_produced()
        fault = RuntimeFault(FaultKind.END_OF_STREAM)

        assert controller.check_health(telemetry, timeout_s=10, fault=fault) is HealthStatus.UNHEALTHY
        assert "eos" in controller.last_reason


class TestBackoff:
    """n-th backoff is min(d * 2^(n-1), c) and resets to d after success."""

    def test_backoff_doubles_up_to_cap(self, controller, waits):
        for _ in range(6):
            assert controller.attempt_restart(_failing_rebuild) is False

        assert waits == [1, 2, 4, 8, 8, 8]
        assert controller.restarts_so_far == 6

    def test_backoff_resets_after_success(self, controller, waits):
        controller.attempt_restart(_failing_rebuild)
        controller.attempt_restart(_failing_rebuild)
        assert controller.attempt_restart(Mock()) is True

        assert waits == [1, 2, 4]
        assert controller.current_backoff == 1
        assert controller.state is ControllerState.HEALTHY

        controller.attempt_restart(Mock())
        assert waits[-1] == 1

    def test_rebuild_runs_after_wait(self, waits):
        calls = []
        controller = RestartController(
            base_delay_s=3,
            wait=lambda d: calls.append(("wait", d)),
        )

        controller.attempt_restart(lambda: calls.append(("rebuild",)))

        assert calls == [("wait", 3.0), ("rebuild",)]

    def test_failed_rebuild_stays_restarting(self, controller, telemetry):
        controller.attempt_restart(_failing_rebuild)

        assert controller.state is ControllerState.RESTARTING
        # Nothing is running; the next tick must try again
        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.UNHEALTHY

    def test_cancelled_wait_skips_rebuild(self):
        rebuild = Mock()
        controller = RestartController(base_delay_s=1, wait=lambda d: True)

        assert controller.attempt_restart(rebuild) is False
        rebuild.assert_not_called()


class TestBudget:

    def test_budget_exhausted_does_not_rebuild(self, waits):
        controller = RestartController(base_delay_s=1, max_restarts=2, wait=waits.append)
        rebuild = Mock()

        controller.attempt_restart(rebuild)
        controller.attempt_restart(rebuild)
        with pytest.raises(RestartBudgetExhausted) as exc_info:
            controller.attempt_restart(rebuild)

        assert rebuild.call_count == 2
        assert len(waits) == 2
        assert exc_info.value.restarts == 2
        assert exc_info.value.max_restarts == 2
        assert controller.state is ControllerState.FAILED

    def test_failed_is_terminal(self, telemetry):
        controller = RestartController(base_delay_s=1, max_restarts=1, wait=lambda d: None)
        controller.attempt_restart(_failing_rebuild)
        with pytest.raises(RestartBudgetExhausted):
            controller.attempt_restart(_failing_rebuild)

        telemetry.on_unit_produced()
        assert controller.check_health(telemetry, timeout_s=10) is HealthStatus.UNHEALTHY

    def test_zero_means_unlimited(self, controller):
        for _ in range(50):
            controller.attempt_restart(_failing_rebuild)
        assert controller.restarts_so_far == 50


class TestTelemetryIntegration:

    def test_restart_counts_and_resets_run(self, controller, telemetry, clock):
        telemetry.on_unit_produced()
        clock.advance(11)

        controller.attempt_restart(Mock(), telemetry=telemetry)

        assert telemetry.restart_count == 1
        assert telemetry.frame_count == 0
        assert telemetry.seconds_since_last_frame() == pytest.approx(0.0)

    def test_failed_restart_still_counts(self, controller, telemetry):
        telemetry.on_unit_produced()

        controller.attempt_restart(_failing_rebuild, telemetry=telemetry)

        assert telemetry.restart_count == 1
        assert telemetry.frame_count == 1
