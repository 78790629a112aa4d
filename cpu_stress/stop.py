import logging
import time

from cpu_stress import metrics
from cpu_stress.dispatch import INTERNAL_STOP_PATH, Dispatcher
from cpu_stress.state import StressContext

logger = logging.getLogger(__name__)


class StopPropagator:
    """
    Halts the local test synchronously and tells every other replica to stop.

    The broadcast is best-effort: an immediate wave plus follow-up waves at the
    configured delays, all scheduled on the context's TimerRegistry so a later
    start purges them.
    """

    def __init__(self, context: StressContext, dispatcher: Dispatcher):
        self.context = context
        self.dispatcher = dispatcher

    def stop(self) -> dict:
        was_active = self.context.active_test
        self.context.request_stop()
        metrics.stress_test_active.set(0)
        logger.info(f"Stop requested (test active: {was_active}); broadcasting to replicas")

        waves = (0,) + tuple(self.context.config.stop_wave_delays_ms)
        for number, delay_ms in enumerate(waves, start=1):
            self.context.timers.schedule(delay_ms, lambda n=number: self._send_wave(n),
                                         name=f"stop-wave-{number}")
        return {"status": "stopped", "timestamp": time.time(), "was_active": was_active}

    def _send_wave(self, number: int) -> int:
        """Broadcast one stop wave; returns the number of replicas signalled."""
        # a fresh start cleared the flag, this wave is stale
        if not self.context.stop_requested:
            logger.debug(f"Skipping stop wave {number}: stop flag already cleared")
            return 0
        targets = [t for t in self.dispatcher.resolve_targets() if not self.dispatcher.is_self(t)]
        if not targets:
            logger.debug(f"Stop wave {number}: no remote replicas")
            return 0
        timeout_s = self.context.config.stop_signal_timeout_ms / 1000.0
        report = self.dispatcher.broadcast(INTERNAL_STOP_PATH, targets, timeout_s)
        metrics.stop_waves.inc()
        metrics.stop_signals.labels(outcome='success').inc(report.succeeded)
        metrics.stop_signals.labels(outcome='error').inc(report.failed)
        logger.info(f"Stop wave {number}: {report.succeeded}/{len(targets)} replicas acknowledged")
        return len(targets)

    def receive_remote_stop(self) -> dict:
        self.context.mark_remote_stop()
        metrics.stress_test_active.set(0)
        logger.info("Received stop signal from another replica")
        return {"status": "stopped", "pod": self.context.config.pod_name, "timestamp": time.time()}
