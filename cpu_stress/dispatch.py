"""
Dispatch layer: decides between local CPU work and HTTP fan-out to replicas.

A single self target runs locally with no HTTP call. Otherwise requests are
spread round-robin over the targets on a bounded worker pool; per-target
failures are logged and counted but never fail the batch.
"""

import logging
import math
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectTimeout, ReadTimeout

from cpu_stress import metrics
from cpu_stress.cpu_work import CpuWorkEngine, WorkResult
from cpu_stress.state import StressContext

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
LOCAL_NAMES = {LOOPBACK, "localhost", "::1"}

CPU_LOAD_PATH = "/cpu-load"
CPU_LOAD_INTENSITY_PATH = "/cpu-load-intensity"
INTERNAL_STOP_PATH = "/internal-stop"


class TopologyProvider:
    """Resolves the replicas that should receive load."""

    def get_targets(self) -> List[str]:
        raise NotImplementedError

    def is_local(self, address: str) -> bool:
        return address in LOCAL_NAMES


class StaticTopologyProvider(TopologyProvider):
    """Fixed target list; used outside Kubernetes and in tests."""

    def __init__(self, targets: Optional[Iterable[str]] = None, local_addresses: Optional[Iterable[str]] = None):
        self.targets = list(targets or [])
        self.local_addresses = set(local_addresses or []) | LOCAL_NAMES

    def get_targets(self) -> List[str]:
        return list(self.targets)

    def is_local(self, address: str) -> bool:
        return address in self.local_addresses


def own_addresses() -> set:
    """Addresses the host resolves for itself (best effort)."""
    addresses = set()
    try:
        addresses.add(socket.gethostbyname(socket.gethostname()))
    except OSError:
        pass
    return addresses


def build_target_url(target: str, port: int, path: str) -> str:
    if "://" in target:
        return f"{target.rstrip('/')}{path}"
    if target.startswith("["):
        # bracketed IPv6, with or without a port
        if "]:" in target:
            return f"http://{target}{path}"
        return f"http://{target}:{port}{path}"
    if target.count(":") > 1:
        return f"http://[{target}]:{port}{path}"
    if target.count(":") == 1:
        # already host:port
        return f"http://{target}{path}"
    return f"http://{target}:{port}{path}"


@dataclass
class DispatchOutcome:
    target: str
    ok: bool
    status_code: int = -1
    error: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass
class BatchReport:
    """Per-target outcomes of one fan-out batch (or a local run)."""
    requested: int = 0
    local: bool = False
    outcomes: List[DispatchOutcome] = field(default_factory=list)
    work: Optional[WorkResult] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "local": self.local,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class Dispatcher:
    """Sends load for one engine, locally or across replicas."""

    def __init__(self, context: StressContext, cpu: CpuWorkEngine,
                 topology: Optional[TopologyProvider] = None,
                 session: Optional[requests.Session] = None):
        self.context = context
        self.cpu = cpu
        self.topology = topology or StaticTopologyProvider()
        self._owns_session = session is None
        if session is None:
            pool = self.context.config.max_dispatch_workers
            adapter = HTTPAdapter(pool_connections=pool, pool_maxsize=pool)
            session = requests.Session()
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.session = session

    @property
    def config(self):
        return self.context.config

    # -- target resolution -------------------------------------------------

    def resolve_targets(self) -> List[str]:
        """Current replica addresses; a single loopback target when none are known."""
        try:
            targets = [t for t in self.topology.get_targets() if t]
        except Exception as e:
            logger.warning(f"Topology lookup failed, falling back to local target: {e}")
            targets = []
        return targets or [LOOPBACK]

    def is_self(self, target: str) -> bool:
        if target in LOCAL_NAMES:
            return True
        if self.config.pod_ip and target == self.config.pod_ip:
            return True
        try:
            return bool(self.topology.is_local(target))
        except Exception as e:
            logger.debug(f"is_local check failed for {target}: {e}")
            return False

    def is_single_local(self, targets: List[str]) -> bool:
        return len(targets) == 1 and self.is_self(targets[0])

    def request_count(self, intensity: float) -> int:
        return max(1, math.floor(self.config.concurrency * intensity / 100))

    # -- load --------------------------------------------------------------

    def send_load(self, intensity: float, duration_ms: int,
                  targets: Optional[List[str]] = None,
                  stop_event: Optional[threading.Event] = None) -> BatchReport:
        """
        Run one step of load at ``intensity`` for ``duration_ms``.

        Local targets run the CPU work engine directly; otherwise
        ``request_count(intensity)`` POSTs of ``{durationMs, intensityPercent}``
        go out round-robin and the call returns once the whole batch settles.
        """
        stop_event = stop_event or self.context.stop_event
        if stop_event.is_set():
            return BatchReport()
        targets = targets if targets is not None else self.resolve_targets()

        if self.is_single_local(targets):
            work = self.cpu.execute_at_intensity(duration_ms, intensity, stop_event=stop_event)
            return BatchReport(requested=1, local=True, work=work)

        count = self.request_count(intensity)
        timeout_s = (duration_ms + self.config.intensity_timeout_buffer_ms) / 1000.0
        payload = {"durationMs": int(duration_ms), "intensityPercent": intensity}
        calls = []
        for i in range(count):
            target = targets[i % len(targets)]
            calls.append((target, "POST", build_target_url(target, self.config.port, CPU_LOAD_INTENSITY_PATH), payload))
        report = self._fan_out(calls, timeout_s)
        logger.debug(f"Load step {intensity:.0f}%: {report.succeeded}/{report.requested} succeeded across {len(targets)} targets")
        return report

    def run_rounds(self, rounds: Optional[int] = None, targets: Optional[List[str]] = None,
                   stop_event: Optional[threading.Event] = None) -> int:
        """Legacy round-based load; returns the number of rounds that ran."""
        stop_event = stop_event or self.context.stop_event
        rounds = self.config.rounds if rounds is None else rounds
        targets = targets if targets is not None else self.resolve_targets()
        local = self.is_single_local(targets)
        if local:
            logger.info("Single pod mode: running local CPU stress (no HTTP overhead)")
        else:
            logger.info(f"Distributed load: {rounds} rounds x {self.config.concurrency} requests over {len(targets)} targets")

        completed = 0
        for round_number in range(1, rounds + 1):
            if stop_event.is_set():
                logger.info(f"Stopped early: completed {completed}/{rounds} rounds")
                break
            if local:
                result = self.cpu.execute(stop_event=stop_event)
                logger.debug(f"Local round {round_number} complete: {result.elapsed_ms}ms, stopped={result.was_stopped}")
                if result.was_stopped:
                    break
            else:
                calls = []
                for i in range(self.config.concurrency):
                    target = targets[i % len(targets)]
                    calls.append((target, "GET", build_target_url(target, self.config.port, CPU_LOAD_PATH), None))
                report = self._fan_out(calls, self.config.fetch_timeout_ms / 1000.0)
                logger.info(f"Round {round_number}/{rounds}: {report.succeeded}/{report.requested} succeeded")
            completed += 1
        return completed

    def broadcast(self, path: str, targets: List[str], timeout_s: float) -> BatchReport:
        """One best-effort POST per target."""
        calls = [(t, "POST", build_target_url(t, self.config.port, path), None) for t in targets]
        return self._fan_out(calls, timeout_s)

    # -- fan-out -----------------------------------------------------------

    def _call(self, target: str, method: str, url: str, payload, timeout_s: float) -> DispatchOutcome:
        start_time = time.time()
        try:
            if method == "GET":
                response = self.session.get(url, timeout=timeout_s)
            else:
                response = self.session.post(url, json=payload, timeout=timeout_s)
            elapsed_ms = (time.time() - start_time) * 1000
            ok = 200 <= response.status_code < 400
            return DispatchOutcome(target, ok, response.status_code,
                                   None if ok else f"HTTP {response.status_code}", elapsed_ms)
        except (ConnectTimeout, ReadTimeout) as e:
            logger.debug(f"Request to {url} timed out: {e}")
            return DispatchOutcome(target, False, -1, f"timeout: {e}", (time.time() - start_time) * 1000)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Request to {url} failed: {e}")
            return DispatchOutcome(target, False, -1, str(e), (time.time() - start_time) * 1000)

    def _fan_out(self, calls, timeout_s: float) -> BatchReport:
        report = BatchReport(requested=len(calls))
        if not calls:
            return report
        max_workers = min(self.config.max_dispatch_workers, len(calls))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(self._call, target, method, url, payload, timeout_s)
                       for target, method, url, payload in calls]
            wait(futures)
            for future, (target, _, url, _) in zip(futures, calls):
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.warning(f"Dispatch to {url} raised unexpectedly: {e}")
                    outcome = DispatchOutcome(target, False, -1, str(e))
                report.outcomes.append(outcome)
                metrics.dispatch_requests.labels(outcome='success' if outcome.ok else 'error').inc()
        if report.failed:
            logger.debug(f"Batch finished with {report.failed}/{report.requested} failures")
        return report

    def close(self):
        if self._owns_session:
            self.session.close()
