"""
StressEngine: one orchestrator instance owning a StressContext and the
components built on it. The control API and tests talk only to this class.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from cpu_stress import metrics
from cpu_stress.config import ConfigError, StressConfig
from cpu_stress.cpu_work import CpuWorkEngine, WorkResult
from cpu_stress.dispatch import Dispatcher, TopologyProvider
from cpu_stress.phases import PhaseObserver, PhaseRunResult, PhaseSequencer
from cpu_stress.state import StressContext
from cpu_stress.stop import StopPropagator
from cpu_stress.suite import MetricsProvider, SuiteAggregate, SuiteHarness

logger = logging.getLogger(__name__)

MODE_SUITE = "suite"
MODE_PHASED = "phased"
MODE_LOAD = "load"
MODES = (MODE_SUITE, MODE_PHASED, MODE_LOAD)


@dataclass
class StartResult:
    accepted: bool
    mode: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"accepted": self.accepted, "mode": self.mode,
                "message": self.message, **self.details}


class StressEngine:
    def __init__(self, config: Optional[StressConfig] = None,
                 topology: Optional[TopologyProvider] = None,
                 metrics_provider: Optional[MetricsProvider] = None,
                 session: Optional[requests.Session] = None,
                 on_phase_change: Optional[PhaseObserver] = None):
        self.base_config = config or StressConfig.from_env()
        self.context = StressContext(self.base_config)
        self.cpu = CpuWorkEngine(self.context)
        self.dispatcher = Dispatcher(self.context, self.cpu, topology=topology, session=session)
        self.propagator = StopPropagator(self.context, self.dispatcher)
        self.harness = SuiteHarness(self.context, self.dispatcher, metrics_provider,
                                    on_phase_change=on_phase_change)
        self.on_phase_change = on_phase_change
        self.mode = None
        self.last_phase_result: Optional[PhaseRunResult] = None
        self.last_rounds_completed: Optional[int] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def config(self) -> StressConfig:
        return self.context.config

    # -- control surface ---------------------------------------------------

    def start(self, mode: str = MODE_SUITE, iterations: Optional[int] = None,
              overrides: Optional[dict] = None) -> StartResult:
        """
        Start a test on a worker thread.

        Raises ConfigError for an unknown mode, bad iterations or bad overrides,
        before the lock is touched. Returns ``accepted=False`` if a test is
        already running; the running test is left untouched.
        """
        if mode not in MODES:
            raise ConfigError(f"Unknown mode '{mode}', expected one of {', '.join(MODES)}")
        config = self.base_config.with_overrides(overrides)
        if mode == MODE_SUITE:
            if iterations is None:
                iterations = config.suite_iterations
            try:
                iterations = int(iterations)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid iterations: {iterations!r}") from e
            if iterations < 1:
                raise ConfigError("iterations must be >= 1")

        token = self.context.try_start()
        if token is None:
            logger.warning(f"Rejected {mode} start: a test is already running")
            return StartResult(False, mode, "A stress test is already running",
                               {"status": "already_running"})

        self.context.config = config
        self.context.reset_phase_state(total_iterations=iterations if mode == MODE_SUITE else 1)
        self.mode = mode
        metrics.stress_test_active.set(1)
        self._thread = threading.Thread(target=self._run, args=(token, mode, iterations),
                                        daemon=True, name=f"stress-{mode}-{token}")
        self._thread.start()

        details = {"status": "started", "pod": config.pod_name,
                   "total_duration_ms": config.total_phase_ms}
        if mode == MODE_SUITE:
            details["iterations"] = iterations
        elif mode == MODE_LOAD:
            details = {"status": "started", "pod": config.pod_name,
                       "rounds": config.rounds, "concurrency": config.concurrency}
        logger.info(f"Started {mode} test (run {token})")
        return StartResult(True, mode, f"{mode} test started", details)

    def _run(self, token: int, mode: str, iterations: Optional[int]):
        try:
            if mode == MODE_SUITE:
                self.harness.run(token, iterations)
            elif mode == MODE_PHASED:
                self.context.update_phase(iteration=1)
                sequencer = PhaseSequencer(self.context, self.dispatcher.send_load,
                                           on_phase_change=self.on_phase_change,
                                           stop_event=self.context.stop_event)
                self.last_phase_result = sequencer.run()
            else:
                self.last_rounds_completed = self.dispatcher.run_rounds(stop_event=self.context.stop_event)
        except Exception:
            logger.exception(f"{mode} test failed")
        finally:
            if self.context.end_test(token):
                metrics.stress_test_active.set(0)
                logger.info(f"{mode} test (run {token}) finished")
            # overrides apply to this run only
            self.context.restore_config(token, self.base_config)

    def stop(self) -> dict:
        return self.propagator.stop()

    def interrupt_iteration(self) -> bool:
        """Abort only the running iteration; the suite moves on to the next one."""
        if not self.context.active_test:
            return False
        logger.info("Interrupting current iteration")
        self.context.interrupt()
        return True

    def get_phase_state(self) -> dict:
        return self.context.phase_snapshot().to_dict()

    def get_suite_results(self) -> SuiteAggregate:
        return self.harness.aggregate()

    def get_status(self) -> dict:
        status = self.context.snapshot()
        status.update({
            "mode": self.mode,
            "pod": self.config.pod_name,
            "phase": self.get_phase_state(),
            "completed_iterations": len(self.context.results_snapshot()),
            "pending_timers": len(self.context.timers),
        })
        return status

    def get_cluster_status(self) -> dict:
        """Replica count and CPU from the metrics provider plus the current dispatch targets."""
        status = self.harness.metrics_provider.fetch_cluster_status()
        return {
            "replica_count": status.replica_count,
            "desired_replicas": status.desired_replicas,
            "cpu_utilization_percent": status.cpu_utilization_percent,
            "error": status.error,
            "targets": self.dispatcher.resolve_targets(),
        }

    # -- replica-side work -------------------------------------------------

    def run_remote_work(self, duration_ms: int, intensity: float) -> WorkResult:
        if not self.context.accept_remote_work():
            logger.debug("Rejecting remote work: stop signal still in effect")
            return WorkResult(0, 0.0, True)
        return self.cpu.execute_at_intensity(duration_ms, intensity, stop_event=self.context.stop_event)

    def run_remote_full_work(self) -> WorkResult:
        if not self.context.accept_remote_work():
            logger.debug("Rejecting remote work: stop signal still in effect")
            return WorkResult(0, 0.0, True)
        return self.cpu.execute(stop_event=self.context.stop_event)

    def receive_remote_stop(self) -> dict:
        return self.propagator.receive_remote_stop()

    def stream_work(self, duration_ms: int, on_progress: Callable[[int, int, float], None]) -> WorkResult:
        if not self.context.accept_remote_work():
            return WorkResult(0, 0.0, True)
        return self.cpu.execute_streaming(duration_ms, on_progress, stop_event=self.context.stop_event)

    # -- lifecycle ---------------------------------------------------------

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker thread; returns True once it has exited."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: Optional[float] = 5.0):
        if self.context.active_test:
            self.context.request_stop()
            metrics.stress_test_active.set(0)
        self.context.timers.cancel_all()
        self.join(timeout)
        self.dispatcher.close()
        logger.info("Stress engine shut down")
