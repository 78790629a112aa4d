import threading
import time

import pytest
import requests

from cpu_stress.config import StressConfig
from cpu_stress.cpu_work import CpuWorkEngine
from cpu_stress.dispatch import Dispatcher, StaticTopologyProvider
from cpu_stress.engine import StressEngine
from cpu_stress.state import StressContext
from cpu_stress.suite import StaticMetricsProvider


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


class FakeSession:
    """Records requests instead of sending them; URLs containing a failing target raise."""

    def __init__(self, fail_targets=(), status_code=200):
        self.fail_targets = set(fail_targets)
        self.status_code = status_code
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def _record(self, method, url, payload, timeout):
        with self._lock:
            self.calls.append({"method": method, "url": url, "json": payload, "timeout": timeout})
        if any(target in url for target in self.fail_targets):
            raise requests.exceptions.ConnectionError(f"connection refused: {url}")
        return FakeResponse(self.status_code)

    def get(self, url, timeout=None):
        return self._record("GET", url, None, timeout)

    def post(self, url, json=None, timeout=None):
        return self._record("POST", url, json, timeout)

    def close(self):
        self.closed = True


class SleepingDispatcher:
    """Stand-in for Dispatcher.send_load that only waits out the step."""

    def __init__(self, context, fail_when=None):
        self.context = context
        self.fail_when = fail_when
        self.calls = []

    def send_load(self, intensity, duration_ms, targets=None, stop_event=None):
        self.calls.append((intensity, duration_ms))
        if self.fail_when is not None and self.fail_when(self.context):
            raise RuntimeError("dispatch exploded")
        (stop_event or self.context.stop_event).wait(duration_ms / 1000.0)


def wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fast_config():
    return StressConfig(
        pod_name="test-pod",
        concurrency=4,
        rounds=3,
        work_duration_ms=60,
        chunk_duration_ms=10,
        stream_chunk_ms=5,
        iterations_per_chunk=200,
        idle_sleep_cap_ms=50,
        warm_up_ms=20,
        ramp_up_ms=100,
        steady_ms=50,
        ramp_down_ms=100,
        intensity_steps=5,
        suite_iterations=2,
        metrics_poll_ms=5,
        stop_poll_ms=5,
        stop_wave_delays_ms=(10, 30),
        remote_stop_hold_ms=200,
        max_dispatch_workers=8,
    )


@pytest.fixture
def context(fast_config):
    return StressContext(fast_config)


@pytest.fixture
def cpu(context):
    return CpuWorkEngine(context)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def make_dispatcher(context, cpu, session):
    def _make(targets=(), **topology_kwargs):
        return Dispatcher(context, cpu, StaticTopologyProvider(targets, **topology_kwargs), session=session)
    return _make


@pytest.fixture
def engine(fast_config, session):
    engine = StressEngine(fast_config, topology=StaticTopologyProvider([]),
                          metrics_provider=StaticMetricsProvider(1), session=session)
    yield engine
    engine.shutdown(timeout=5)
