"""
Shared test state: the single-test lifecycle lock, the stop flag, live phase
progress, recorded iteration results and the cancelable timer registry.

One StressContext exists per engine and is handed to every component, so
independent engines never share flags.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, List, Optional

from cpu_stress.config import StressConfig

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    WARM_UP = "warm-up"
    RAMP_UP = "ramp-up"
    STEADY = "steady"
    RAMP_DOWN = "ramp-down"
    COMPLETE = "complete"


@dataclass
class PhaseState:
    """Live progress of the current phase sequence."""
    phase: Phase = Phase.IDLE
    intensity: float = 0.0
    iteration: int = 0
    total_iterations: int = 0
    phase_progress: float = 0.0
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


class TrackedTimer:
    """A delayed callback that unregisters itself when it fires or is cancelled."""

    def __init__(self, registry: "TimerRegistry", delay_ms: int, callback: Callable[[], None], name: str = "timer"):
        self.name = name
        self.delay_ms = delay_ms
        self.fire_at = time.time() + delay_ms / 1000.0
        self._registry = registry
        self._callback = callback
        self._timer = threading.Timer(delay_ms / 1000.0, self._fire)
        self._timer.daemon = True

    def _fire(self):
        if not self._registry._discard(self):
            return
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Timer '{self.name}' callback failed: {e}")

    def start(self):
        self._timer.start()

    def cancel(self) -> bool:
        """Cancel the timer; returns False if it already fired or was cancelled."""
        removed = self._registry._discard(self)
        self._timer.cancel()
        return removed


class TimerRegistry:
    """Registry of pending TrackedTimers so stop/start can purge them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._timers = set()

    def schedule(self, delay_ms: int, callback: Callable[[], None], name: str = "timer") -> TrackedTimer:
        timer = TrackedTimer(self, max(0, int(delay_ms)), callback, name=name)
        with self._lock:
            self._timers.add(timer)
        timer.start()
        return timer

    def _discard(self, timer: TrackedTimer) -> bool:
        with self._lock:
            if timer in self._timers:
                self._timers.remove(timer)
                return True
            return False

    def cancel_all(self) -> int:
        with self._lock:
            pending = list(self._timers)
            self._timers.clear()
        for timer in pending:
            timer._timer.cancel()
        if pending:
            logger.debug(f"Cancelled {len(pending)} pending timer(s)")
        return len(pending)

    def pending(self) -> List[TrackedTimer]:
        with self._lock:
            return list(self._timers)

    def __len__(self):
        with self._lock:
            return len(self._timers)


class StressContext:
    """
    Process-wide lifecycle state for one engine.

    ``active_test`` is the single-test lock: try_start() is a checked
    read-then-set that rejects (never queues) a second start. The stop flag is
    a threading.Event so sleeping loops wake as soon as it is set. Each run
    gets a fresh Event: loops of a stopped run keep their own (set) event and
    wind down even if a new run starts before they notice.
    """

    def __init__(self, config: Optional[StressConfig] = None):
        self.config = config or StressConfig()
        self.timers = TimerRegistry()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._active_test = False
        self._run_token = 0
        self._started_at = None
        self._stopped_at = None
        self._phase_state = PhaseState()
        self._results = []

    # -- lifecycle ---------------------------------------------------------

    @property
    def active_test(self) -> bool:
        return self._active_test

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def stop_event(self) -> threading.Event:
        """The stop Event of the current run; capture it at the start of a unit of work."""
        return self._stop_event

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    @property
    def run_token(self) -> int:
        return self._run_token

    def try_start(self) -> Optional[int]:
        """Acquire the test lock; returns a run token, or None if a test is active."""
        with self._lock:
            if self._active_test:
                return None
            self._active_test = True
            self._run_token += 1
            self._started_at = time.time()
            self._stopped_at = None
            self._stop_event = threading.Event()
            token = self._run_token
        # waves from an earlier stop must not hit the new test
        self.timers.cancel_all()
        return token

    def owns(self, token: int) -> bool:
        with self._lock:
            return self._active_test and self._run_token == token

    def begin_iteration(self, token: int) -> bool:
        """Clear the stop flag for a new iteration if ``token`` still holds the lock."""
        with self._lock:
            if not (self._active_test and self._run_token == token):
                return False
            self._stop_event.clear()
            return True

    def end_test(self, token: int) -> bool:
        """Release the lock at natural completion; a no-op if a stop already released it."""
        with self._lock:
            if not (self._active_test and self._run_token == token):
                return False
            self._active_test = False
            # halts any stray local work loop
            self._stop_event.set()
        return True

    def restore_config(self, token: int, config: StressConfig) -> bool:
        """Put ``config`` back once run ``token`` is over, unless a newer run has started."""
        with self._lock:
            if self._active_test or self._run_token != token:
                return False
            self.config = config
            return True

    def request_stop(self):
        """Set the stop flag, release the lock and purge pending timers."""
        with self._lock:
            self._stop_event.set()
            self._active_test = False
            self._stopped_at = time.time()
        self.timers.cancel_all()

    def interrupt(self):
        """Set the stop flag without releasing the lock (aborts the running iteration only)."""
        self._stop_event.set()

    def mark_remote_stop(self):
        with self._lock:
            self._stop_event.set()
            self._active_test = False
            self._stopped_at = time.time()

    def accept_remote_work(self) -> bool:
        """
        Decide whether a work request from a peer may run.

        While this replica orchestrates a test, the stop flag decides. Otherwise
        a stop received less than ``remote_stop_hold_ms`` ago rejects the
        request; an older (or completion-time) flag is stale and gets cleared.
        """
        with self._lock:
            if self._active_test:
                return not self._stop_event.is_set()
            if not self._stop_event.is_set():
                return True
            if self._stopped_at is not None:
                held_ms = (time.time() - self._stopped_at) * 1000
                if held_ms < self.config.remote_stop_hold_ms:
                    return False
            self._stop_event.clear()
            self._stopped_at = None
            return True

    def sleep_with_stop_check(self, duration_ms: int, stop_event: Optional[threading.Event] = None) -> bool:
        """Stop-aware sleep polling at ``stop_poll_ms``; returns True if stopped."""
        stop_event = stop_event or self._stop_event
        deadline = time.monotonic() + duration_ms / 1000.0
        poll_s = self.config.stop_poll_ms / 1000.0
        while True:
            if stop_event.is_set():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return stop_event.is_set()
            stop_event.wait(min(poll_s, remaining))

    # -- phase state -------------------------------------------------------

    def update_phase(self, **changes):
        with self._lock:
            for key, value in changes.items():
                if not hasattr(self._phase_state, key):
                    raise AttributeError(f"PhaseState has no field '{key}'")
                setattr(self._phase_state, key, value)

    def reset_phase_state(self, total_iterations: int = 0):
        with self._lock:
            self._phase_state = PhaseState(total_iterations=total_iterations)

    def phase_snapshot(self) -> PhaseState:
        with self._lock:
            return PhaseState(**asdict(self._phase_state))

    # -- suite results -----------------------------------------------------

    def add_result(self, result):
        with self._lock:
            self._results.append(result)

    def reset_results(self):
        with self._lock:
            self._results = []

    def results_snapshot(self) -> list:
        with self._lock:
            return list(self._results)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "active_test": self._active_test,
                "stop_requested": self._stop_event.is_set(),
                "started_at": self._started_at,
                "run_token": self._run_token,
            }
