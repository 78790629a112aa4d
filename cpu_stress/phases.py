"""
Phase sequencer: warm-up -> ramp-up -> steady -> ramp-down -> complete.

The sequencer owns no load logic; each step hands ``(intensity, duration_ms)``
to a ``send_load`` callable (normally Dispatcher.send_load) and checks the
stop flag at every step boundary.
"""

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from cpu_stress import metrics
from cpu_stress.state import Phase, StressContext

logger = logging.getLogger(__name__)


@dataclass
class PhaseDurations:
    """Measured wall-clock milliseconds spent in each phase."""
    warm_up_ms: int = 0
    ramp_up_ms: int = 0
    steady_ms: int = 0
    ramp_down_ms: int = 0

    @property
    def total_ms(self) -> int:
        return self.warm_up_ms + self.ramp_up_ms + self.steady_ms + self.ramp_down_ms

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_ms"] = self.total_ms
        return data


@dataclass
class PhaseRunResult:
    durations: PhaseDurations = field(default_factory=PhaseDurations)
    was_stopped: bool = False
    elapsed_ms: int = 0
    stopped_in: Optional[Phase] = None

    def to_dict(self) -> dict:
        return {
            "durations": self.durations.to_dict(),
            "was_stopped": self.was_stopped,
            "elapsed_ms": self.elapsed_ms,
            "stopped_in": self.stopped_in.value if self.stopped_in else None,
        }


PhaseObserver = Callable[[Phase, float, float], None]


class _Stopped(Exception):
    pass


class PhaseSequencer:
    """Runs one phase sequence against a StressContext."""

    def __init__(self, context: StressContext, send_load: Callable[..., object],
                 on_phase_change: Optional[PhaseObserver] = None,
                 stop_event: Optional[threading.Event] = None):
        self.context = context
        self.send_load = send_load
        self.on_phase_change = on_phase_change
        self.stop_event = stop_event or context.stop_event
        self._start = None
        self._phase = Phase.IDLE

    @property
    def config(self):
        return self.context.config

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000) if self._start else 0

    def _report(self, phase: Phase, intensity: float, progress: float):
        self._phase = phase
        self.context.update_phase(phase=phase, intensity=intensity,
                                  phase_progress=round(progress, 1),
                                  elapsed_ms=self._elapsed_ms())
        metrics.stress_phase_intensity.set(intensity)
        if self.on_phase_change is None:
            return
        try:
            self.on_phase_change(phase, intensity, progress)
        except Exception as e:
            logger.warning(f"Phase observer failed on {phase.value}: {e}")

    def _check_stop(self):
        if self.stop_event.is_set():
            raise _Stopped()

    def _step(self, intensity: float, duration_ms: int):
        self.send_load(intensity, duration_ms, stop_event=self.stop_event)
        self._check_stop()

    # -- phases ------------------------------------------------------------

    def _warm_up(self):
        self._report(Phase.WARM_UP, 0, 0)
        logger.info(f"Warm-up: {self.config.warm_up_ms}ms with no load")
        if self.context.sleep_with_stop_check(self.config.warm_up_ms, stop_event=self.stop_event):
            raise _Stopped()
        self._report(Phase.WARM_UP, 0, 100)

    def _ramp_up(self):
        steps = self.config.intensity_steps
        step_ms = self.config.ramp_step_ms
        logger.info(f"Ramp-up: {steps} steps of {step_ms}ms")
        for k in range(1, steps + 1):
            self._check_stop()
            intensity = k / steps * 100
            self._report(Phase.RAMP_UP, intensity, (k - 1) / steps * 100)
            self._step(intensity, step_ms)

    def _steady(self):
        # a zero-length ramp step would leave steady with no chunks
        step_ms = self.config.ramp_step_ms or self.config.chunk_duration_ms
        chunks = math.ceil(self.config.steady_ms / step_ms)
        logger.info(f"Steady: {chunks} chunks of {step_ms}ms at 100%")
        for i in range(chunks):
            self._check_stop()
            self._report(Phase.STEADY, 100, i / chunks * 100)
            self._step(100, step_ms)

    def _ramp_down(self):
        steps = self.config.intensity_steps
        step_ms = self.config.ramp_down_ms // steps
        logger.info(f"Ramp-down: {steps} steps of {step_ms}ms")
        for i, k in enumerate(range(steps - 1, -1, -1)):
            self._check_stop()
            intensity = k / steps * 100
            self._report(Phase.RAMP_DOWN, intensity, i / steps * 100)
            self._step(intensity, step_ms)

    def run(self) -> PhaseRunResult:
        """Run all phases; stops at the first observed stop flag."""
        result = PhaseRunResult()
        self._start = time.monotonic()
        phases = (
            (self._warm_up, "warm_up_ms"),
            (self._ramp_up, "ramp_up_ms"),
            (self._steady, "steady_ms"),
            (self._ramp_down, "ramp_down_ms"),
        )
        for run_phase, attr in phases:
            phase_start = time.monotonic()
            try:
                run_phase()
            except _Stopped:
                result.was_stopped = True
                result.stopped_in = self._phase
            finally:
                setattr(result.durations, attr, int((time.monotonic() - phase_start) * 1000))
            if result.was_stopped:
                logger.info(f"Phase sequence stopped during {self._phase.value} after {self._elapsed_ms()}ms")
                break

        result.elapsed_ms = self._elapsed_ms()
        if not result.was_stopped:
            self._report(Phase.COMPLETE, 0, 100)
            logger.info(f"Phase sequence complete in {result.elapsed_ms}ms ({result.durations.to_dict()})")
        metrics.stress_phase_intensity.set(0)
        return result
