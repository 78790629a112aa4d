"""
Cooperative CPU work executor.

Work is split into fixed-size chunks. The stop flag is checked before the
first chunk and at every chunk boundary, and the thread yields between chunks;
a running chunk is never interrupted.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cpu_stress import metrics
from cpu_stress.state import StressContext

logger = logging.getLogger(__name__)

# Idle slices shorter than this are replaced by a plain yield
MIN_IDLE_SLICE_MS = 10


@dataclass
class WorkResult:
    elapsed_ms: int
    result: float
    was_stopped: bool

    def to_dict(self) -> dict:
        return {
            "status": "stopped" if self.was_stopped else "complete",
            "elapsed": self.elapsed_ms,
            "result": round(self.result, 6),
            "was_stopped": self.was_stopped,
        }


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def burn_cpu(deadline: float, iterations: int) -> float:
    """Run math in a tight loop until ``deadline`` (monotonic seconds)."""
    result = 0.0
    while time.monotonic() < deadline:
        for i in range(iterations):
            x = math.sqrt(i + 1)
            y = math.sin(x) * math.cos(x)
            result += y * math.tan((i % 89) + 1)
    return result


class CpuWorkEngine:
    """Executes bounded CPU work against one StressContext's stop flag."""

    def __init__(self, context: StressContext):
        self.context = context

    @property
    def config(self):
        return self.context.config

    def execute(self, duration_ms: Optional[int] = None,
                stop_event: Optional[threading.Event] = None) -> WorkResult:
        """Full-intensity work for ``duration_ms`` (defaults to the configured work duration)."""
        stop_event = stop_event or self.context.stop_event
        if duration_ms is None:
            duration_ms = self.config.work_duration_ms
        if stop_event.is_set():
            return WorkResult(0, 0.0, True)

        chunk_s = self.config.chunk_duration_ms / 1000.0
        iterations = self.config.iterations_per_chunk
        start = time.monotonic()
        end = start + duration_ms / 1000.0
        result = 0.0
        was_stopped = False

        while time.monotonic() < end:
            if stop_event.is_set():
                was_stopped = True
                break
            result += burn_cpu(min(time.monotonic() + chunk_s, end), iterations)
            time.sleep(0)

        elapsed = _elapsed_ms(start)
        metrics.cpu_work_seconds.labels(kind='full').observe(elapsed / 1000.0)
        return WorkResult(elapsed, result, was_stopped)

    def execute_at_intensity(self, duration_ms: int, intensity: float,
                             stop_event: Optional[threading.Event] = None) -> WorkResult:
        """
        Work at ``intensity`` percent for ``duration_ms``.

        Each chunk runs compute for ``chunk * level`` and sleeps (stop-aware) for
        ``chunk * (1 - level)``. At 0% this is a bounded sleep capped at
        ``idle_sleep_cap_ms`` with no compute.
        """
        stop_event = stop_event or self.context.stop_event
        level = max(0.0, min(100.0, float(intensity))) / 100.0
        if stop_event.is_set():
            return WorkResult(0, 0.0, True)

        start = time.monotonic()
        if level == 0:
            wait_s = min(duration_ms, self.config.idle_sleep_cap_ms) / 1000.0
            was_stopped = stop_event.wait(wait_s) if wait_s > 0 else False
            return WorkResult(_elapsed_ms(start), 0.0, was_stopped)

        chunk_ms = self.config.chunk_duration_ms
        iterations = max(1, int(self.config.iterations_per_chunk * level))
        end = start + duration_ms / 1000.0
        result = 0.0

        while time.monotonic() < end:
            if stop_event.is_set():
                return WorkResult(_elapsed_ms(start), result, True)

            active_deadline = min(time.monotonic() + chunk_ms * level / 1000.0, end)
            result += burn_cpu(active_deadline, iterations)

            idle_ms = min(chunk_ms * (1 - level), max(0.0, (end - time.monotonic()) * 1000))
            if idle_ms > MIN_IDLE_SLICE_MS:
                if stop_event.wait(idle_ms / 1000.0):
                    return WorkResult(_elapsed_ms(start), result, True)
            else:
                time.sleep(0)

        elapsed = _elapsed_ms(start)
        metrics.cpu_work_seconds.labels(kind='intensity').observe(elapsed / 1000.0)
        return WorkResult(elapsed, result, False)

    def execute_streaming(self, duration_ms: int,
                          on_progress: Callable[[int, int, float], None],
                          stop_event: Optional[threading.Event] = None) -> WorkResult:
        """Like execute() with smaller chunks; reports (percent, elapsed_ms, result) per percent change."""
        stop_event = stop_event or self.context.stop_event
        if stop_event.is_set():
            return WorkResult(0, 0.0, True)

        chunk_s = self.config.stream_chunk_ms / 1000.0
        iterations = self.config.iterations_per_chunk
        start = time.monotonic()
        end = start + duration_ms / 1000.0
        last_progress = -1
        result = 0.0

        while time.monotonic() < end:
            if stop_event.is_set():
                break
            result += burn_cpu(min(time.monotonic() + chunk_s, end), iterations)

            elapsed = _elapsed_ms(start)
            progress = min(100, int(elapsed * 100 / duration_ms)) if duration_ms > 0 else 100
            if progress != last_progress:
                last_progress = progress
                try:
                    on_progress(progress, elapsed, round(result, 6))
                except Exception as e:
                    logger.debug(f"Progress callback failed: {e}")
            time.sleep(0)

        elapsed = _elapsed_ms(start)
        metrics.cpu_work_seconds.labels(kind='stream').observe(elapsed / 1000.0)
        return WorkResult(elapsed, round(result, 6), stop_event.is_set())
