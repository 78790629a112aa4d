"""
Multi-iteration test suite harness.

Each iteration records a baseline replica count, runs one phase sequence while
a background sampler polls the metrics provider, and derives scale-up and
scale-down times from the samples. Only iterations that finish without
observing the stop flag are recorded; aggregates are computed over the
non-null timing fields of the recorded ones.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from cpu_stress import metrics
from cpu_stress.dispatch import Dispatcher
from cpu_stress.phases import PhaseDurations, PhaseObserver, PhaseSequencer
from cpu_stress.state import StressContext

logger = logging.getLogger(__name__)


@dataclass
class ClusterStatus:
    replica_count: int
    cpu_utilization_percent: float = 0.0
    desired_replicas: Optional[int] = None
    error: bool = False


class MetricsProvider:
    """Reports replica count and CPU utilization. Implementations must not raise."""

    def fetch_cluster_status(self) -> ClusterStatus:
        raise NotImplementedError


class StaticMetricsProvider(MetricsProvider):
    """In-process provider whose status is set explicitly."""

    def __init__(self, replica_count: int = 1, cpu_utilization_percent: float = 0.0):
        self._lock = threading.Lock()
        self._status = ClusterStatus(replica_count, cpu_utilization_percent, replica_count)

    def set_status(self, replica_count: int, cpu_utilization_percent: float = 0.0, error: bool = False):
        with self._lock:
            self._status = ClusterStatus(replica_count, cpu_utilization_percent, replica_count, error)

    def fetch_cluster_status(self) -> ClusterStatus:
        with self._lock:
            status = self._status
        return ClusterStatus(status.replica_count, status.cpu_utilization_percent,
                             status.desired_replicas, status.error)


@dataclass
class IterationResult:
    iteration: int
    scale_up_time_ms: Optional[int]
    scale_down_time_ms: Optional[int]
    baseline_replicas: int
    peak_replicas: int
    peak_cpu_percent: float
    samples: int
    durations: PhaseDurations = field(default_factory=PhaseDurations)
    completed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "scale_up_time_ms": self.scale_up_time_ms,
            "scale_down_time_ms": self.scale_down_time_ms,
            "baseline_replicas": self.baseline_replicas,
            "peak_replicas": self.peak_replicas,
            "peak_cpu_percent": self.peak_cpu_percent,
            "samples": self.samples,
            "durations": self.durations.to_dict(),
            "completed_at": self.completed_at,
        }


@dataclass
class SuiteAggregate:
    iterations: int
    completed: int
    avg_scale_up_ms: Optional[float] = None
    min_scale_up_ms: Optional[float] = None
    max_scale_up_ms: Optional[float] = None
    avg_scale_down_ms: Optional[float] = None
    min_scale_down_ms: Optional[float] = None
    max_scale_down_ms: Optional[float] = None
    avg_peak_replicas: Optional[float] = None
    avg_peak_cpu_percent: Optional[float] = None
    results: List[IterationResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "iterations": self.iterations,
            "completed": self.completed,
            "scale_up": {"avg_ms": self.avg_scale_up_ms, "min_ms": self.min_scale_up_ms,
                         "max_ms": self.max_scale_up_ms},
            "scale_down": {"avg_ms": self.avg_scale_down_ms, "min_ms": self.min_scale_down_ms,
                           "max_ms": self.max_scale_down_ms},
            "avg_peak_replicas": self.avg_peak_replicas,
            "avg_peak_cpu_percent": self.avg_peak_cpu_percent,
            "results": [r.to_dict() for r in self.results],
        }


def _stats(series):
    values = pd.to_numeric(series, errors='coerce').dropna()
    if values.empty:
        return None, None, None
    return float(np.mean(values)), float(np.min(values)), float(np.max(values))


def compute_aggregate(results: List[IterationResult], requested: int) -> SuiteAggregate:
    aggregate = SuiteAggregate(iterations=requested, completed=len(results), results=list(results))
    if not results:
        return aggregate
    df = pd.DataFrame([{
        "scale_up": r.scale_up_time_ms,
        "scale_down": r.scale_down_time_ms,
        "peak_replicas": r.peak_replicas,
        "peak_cpu": r.peak_cpu_percent,
    } for r in results])
    aggregate.avg_scale_up_ms, aggregate.min_scale_up_ms, aggregate.max_scale_up_ms = _stats(df["scale_up"])
    aggregate.avg_scale_down_ms, aggregate.min_scale_down_ms, aggregate.max_scale_down_ms = _stats(df["scale_down"])
    aggregate.avg_peak_replicas = _stats(df["peak_replicas"])[0]
    aggregate.avg_peak_cpu_percent = _stats(df["peak_cpu"])[0]
    return aggregate


class ScalingTracker:
    """Derives scale-up/scale-down times and running peaks from samples."""

    def __init__(self, baseline: int):
        self.baseline = baseline
        self.peak_replicas = baseline
        self.peak_cpu = 0.0
        self.scale_up_ms = None
        self.scale_down_ms = None
        self.samples = 0
        self._lock = threading.Lock()

    def observe(self, elapsed_ms: int, status: ClusterStatus):
        if status.error:
            return
        with self._lock:
            self.samples += 1
            self.peak_replicas = max(self.peak_replicas, status.replica_count)
            self.peak_cpu = max(self.peak_cpu, float(status.cpu_utilization_percent or 0.0))
            if self.scale_up_ms is None:
                if status.replica_count > self.baseline:
                    self.scale_up_ms = elapsed_ms
                    logger.info(f"Scale-up observed at {elapsed_ms}ms: {self.baseline} -> {status.replica_count} replicas")
            elif self.scale_down_ms is None and status.replica_count <= self.baseline:
                self.scale_down_ms = elapsed_ms
                logger.info(f"Scale-down observed at {elapsed_ms}ms: back to {status.replica_count} replicas")


class MetricsSampler:
    """Background thread polling the metrics provider into a ScalingTracker."""

    def __init__(self, provider: MetricsProvider, tracker: ScalingTracker, poll_ms: int):
        self.provider = provider
        self.tracker = tracker
        self.poll_s = poll_ms / 1000.0
        self._halt = threading.Event()
        self._thread = None
        self._start = None

    def sample(self):
        try:
            status = self.provider.fetch_cluster_status()
        except Exception as e:
            logger.warning(f"Metrics provider raised, sample skipped: {e}")
            return
        elapsed_ms = int((time.monotonic() - self._start) * 1000)
        self.tracker.observe(elapsed_ms, status)

    def _loop(self):
        while not self._halt.is_set():
            self.sample()
            if self._halt.wait(self.poll_s):
                break

    def start(self):
        self._start = time.monotonic()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="metrics-sampler")
        self._thread.start()

    def stop(self, final_sample: bool = False):
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.poll_s, 1.0) + 5)
        if final_sample:
            self.sample()


class SuiteHarness:
    """Runs N phase sequences back to back and records the scaling response."""

    def __init__(self, context: StressContext, dispatcher: Dispatcher,
                 metrics_provider: Optional[MetricsProvider] = None,
                 on_phase_change: Optional[PhaseObserver] = None):
        self.context = context
        self.dispatcher = dispatcher
        self.metrics_provider = metrics_provider or StaticMetricsProvider()
        self.on_phase_change = on_phase_change
        self.requested_iterations = 0
        self._last_baseline = None

    def _baseline(self) -> int:
        try:
            status = self.metrics_provider.fetch_cluster_status()
        except Exception as e:
            logger.warning(f"Baseline fetch failed: {e}")
            status = None
        if status is not None and not status.error:
            self._last_baseline = status.replica_count
            return status.replica_count
        fallback = self._last_baseline if self._last_baseline is not None else 1
        logger.warning(f"Metrics unavailable, using baseline of {fallback} replica(s)")
        return fallback

    def run_iteration(self, iteration: int, stop_event: threading.Event) -> Optional[IterationResult]:
        """Run one iteration; returns None when it observed the stop flag."""
        baseline = self._baseline()
        tracker = ScalingTracker(baseline)
        sampler = MetricsSampler(self.metrics_provider, tracker, self.context.config.metrics_poll_ms)
        sequencer = PhaseSequencer(self.context, self.dispatcher.send_load,
                                   on_phase_change=self.on_phase_change, stop_event=stop_event)
        logger.info(f"Iteration {iteration}/{self.requested_iterations} starting (baseline {baseline} replicas)")

        sampler.start()
        try:
            outcome = sequencer.run()
        finally:
            sampler.stop(final_sample=not stop_event.is_set())

        if outcome.was_stopped:
            logger.info(f"Iteration {iteration} stopped during {outcome.stopped_in.value if outcome.stopped_in else 'unknown'}, not recorded")
            return None

        return IterationResult(
            iteration=iteration,
            scale_up_time_ms=tracker.scale_up_ms,
            scale_down_time_ms=tracker.scale_down_ms,
            baseline_replicas=baseline,
            peak_replicas=tracker.peak_replicas,
            peak_cpu_percent=tracker.peak_cpu,
            samples=tracker.samples,
            durations=outcome.durations,
        )

    def run(self, token: int, iterations: int) -> SuiteAggregate:
        """Run ``iterations`` iterations while ``token`` holds the test lock."""
        self.requested_iterations = iterations
        self.context.reset_results()
        self.context.reset_phase_state(total_iterations=iterations)
        logger.info(f"Test suite starting: {iterations} iterations")

        for iteration in range(1, iterations + 1):
            if not self.context.begin_iteration(token):
                logger.info(f"Test suite stopped before iteration {iteration}")
                break
            stop_event = self.context.stop_event
            self.context.update_phase(iteration=iteration)
            try:
                result = self.run_iteration(iteration, stop_event)
            except Exception:
                logger.exception(f"Iteration {iteration} failed, continuing with the next one")
                metrics.suite_iterations.labels(outcome='failed').inc()
                continue
            if result is None:
                metrics.suite_iterations.labels(outcome='stopped').inc()
                continue
            self.context.add_result(result)
            metrics.suite_iterations.labels(outcome='completed').inc()
            logger.info(f"Iteration {iteration} complete: scale-up {result.scale_up_time_ms}ms, "
                        f"scale-down {result.scale_down_time_ms}ms, peak {result.peak_replicas} replicas")

        aggregate = compute_aggregate(self.context.results_snapshot(), iterations)
        logger.info(f"Test suite finished: {aggregate.completed}/{iterations} iterations recorded")
        return aggregate

    def aggregate(self) -> SuiteAggregate:
        return compute_aggregate(self.context.results_snapshot(), self.requested_iterations)
