"""
Shared pytest fixtures for contract tests.
"""
import threading

import pytest

from reencoder.config import PipelineConfig
from reencoder.telemetry import TelemetryRegistry
from reencoder.tests.fakes import FakeClock, StageFactory, wait_until

_WATCHED_THREADS = ("Feeder-", "PipelineSupervisor")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def telemetry(clock):
    return TelemetryRegistry(clock=clock)


@pytest.fixture
def stage_factory():
    return StageFactory()


@pytest.fixture
def config():
    """Direct-output config; periodic stats and the control server are off."""
    cfg = PipelineConfig()
    cfg.output.mode = "stdout"
    cfg.stats.enabled = False
    cfg.control.port = 0
    cfg.rtsp.reconnect_delay_s = 3
    cfg.resilience.watchdog_timeout_s = 10
    return cfg


@pytest.fixture(autouse=False)  # Request explicitly in tests that start threads
def thread_leak_guard():
    """Fail the test if it leaves feeder or supervisor threads behind."""
    before = set(t.ident for t in threading.enumerate())

    def leaked():
        return [
            t for t in threading.enumerate()
            if t.ident not in before and t.name.startswith(_WATCHED_THREADS)
        ]

    yield
    wait_until(lambda: not leaked())
    remaining = leaked()
    thread_info = "\n".join(f"  - {t.name} (daemon={t.daemon})" for t in remaining)
    assert not remaining, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
