"""
Configuration for the stress engine.

Every tunable comes from the environment through CONFIG_SCHEMA
(KEY: (default, caster)); missing, empty or malformed values fall back to the
default. StressConfig is the typed view the engine components read.
"""

import os
import socket
from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, Optional, Tuple


class ConfigError(ValueError):
    """Raised when a configuration override is unknown or out of range."""


def _coerce_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_delays(value) -> Tuple[int, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(int(v) for v in value)
    parts = [p.strip() for p in str(value).split(",")]
    return tuple(int(p) for p in parts if p)


CONFIG_SCHEMA = {
    "PORT": (3000, int),
    "HOSTNAME": (socket.gethostname(), str),
    "POD_IP": ("", str),
    # Legacy round-based load
    "STRESS_CONCURRENCY": (20, int),
    "STRESS_ROUNDS": (12, int),
    "STRESS_DURATION_MS": (8000, int),
    # CPU work shape
    "CHUNK_DURATION_MS": (200, int),
    "STREAM_CHUNK_MS": (80, int),
    "ITERATIONS_PER_CHUNK": (2000, int),
    "IDLE_SLEEP_CAP_MS": (1000, int),
    # Phased test
    "WARM_UP_MS": (30000, int),
    "RAMP_UP_MS": (60000, int),
    "STEADY_MS": (60000, int),
    "RAMP_DOWN_MS": (60000, int),
    "INTENSITY_STEPS": (10, int),
    # Suite
    "SUITE_ITERATIONS": (10, int),
    "METRICS_POLL_MS": (5000, int),
    # Timeouts and stop propagation
    "FETCH_TIMEOUT_MS": (15000, int),
    "STOP_SIGNAL_TIMEOUT_MS": (1000, int),
    "INTENSITY_TIMEOUT_BUFFER_MS": (5000, int),
    "STOP_POLL_MS": (500, int),
    "STOP_WAVE_DELAYS_MS": ((1000, 3000), _coerce_delays),
    "REMOTE_STOP_HOLD_MS": (5000, int),
    "MAX_DISPATCH_WORKERS": (64, int),
    # Kubernetes lookup
    "K8S_NAMESPACE": ("default", str),
    "APP_LABEL_SELECTOR": ("app=k8s-autoscaling", str),
    "HPA_NAME": ("k8s-autoscaling-hpa", str),
    "SERVICE_NAME": ("k8s-autoscaling-service", str),
    "METRICS_ENABLED": (True, _coerce_bool),
}

# Environment key -> StressConfig field
FIELD_BY_KEY = {
    "PORT": "port",
    "HOSTNAME": "pod_name",
    "POD_IP": "pod_ip",
    "STRESS_CONCURRENCY": "concurrency",
    "STRESS_ROUNDS": "rounds",
    "STRESS_DURATION_MS": "work_duration_ms",
    "CHUNK_DURATION_MS": "chunk_duration_ms",
    "STREAM_CHUNK_MS": "stream_chunk_ms",
    "ITERATIONS_PER_CHUNK": "iterations_per_chunk",
    "IDLE_SLEEP_CAP_MS": "idle_sleep_cap_ms",
    "WARM_UP_MS": "warm_up_ms",
    "RAMP_UP_MS": "ramp_up_ms",
    "STEADY_MS": "steady_ms",
    "RAMP_DOWN_MS": "ramp_down_ms",
    "INTENSITY_STEPS": "intensity_steps",
    "SUITE_ITERATIONS": "suite_iterations",
    "METRICS_POLL_MS": "metrics_poll_ms",
    "FETCH_TIMEOUT_MS": "fetch_timeout_ms",
    "STOP_SIGNAL_TIMEOUT_MS": "stop_signal_timeout_ms",
    "INTENSITY_TIMEOUT_BUFFER_MS": "intensity_timeout_buffer_ms",
    "STOP_POLL_MS": "stop_poll_ms",
    "STOP_WAVE_DELAYS_MS": "stop_wave_delays_ms",
    "REMOTE_STOP_HOLD_MS": "remote_stop_hold_ms",
    "MAX_DISPATCH_WORKERS": "max_dispatch_workers",
    "K8S_NAMESPACE": "namespace",
    "APP_LABEL_SELECTOR": "label_selector",
    "HPA_NAME": "hpa_name",
    "SERVICE_NAME": "service_name",
    "METRICS_ENABLED": "metrics_enabled",
}


def _cast_value(raw_value, caster, default):
    try:
        return caster(raw_value)
    except (TypeError, ValueError):
        return default


def _load_config(environ: Optional[Dict[str, str]] = None) -> dict:
    environ = os.environ if environ is None else environ
    config = {}
    for key, (default, caster) in CONFIG_SCHEMA.items():
        raw = environ.get(key)
        if key == "HOSTNAME" and not raw:
            raw = environ.get("POD_NAME")
        if raw is None or raw == "":
            config[key] = default
        else:
            config[key] = _cast_value(raw, caster, default)
    return config


@dataclass(frozen=True)
class StressConfig:
    port: int = 3000
    pod_name: str = "localhost"
    pod_ip: str = ""
    concurrency: int = 20
    rounds: int = 12
    work_duration_ms: int = 8000
    chunk_duration_ms: int = 200
    stream_chunk_ms: int = 80
    iterations_per_chunk: int = 2000
    idle_sleep_cap_ms: int = 1000
    warm_up_ms: int = 30000
    ramp_up_ms: int = 60000
    steady_ms: int = 60000
    ramp_down_ms: int = 60000
    intensity_steps: int = 10
    suite_iterations: int = 10
    metrics_poll_ms: int = 5000
    fetch_timeout_ms: int = 15000
    stop_signal_timeout_ms: int = 1000
    intensity_timeout_buffer_ms: int = 5000
    stop_poll_ms: int = 500
    stop_wave_delays_ms: Tuple[int, ...] = (1000, 3000)
    remote_stop_hold_ms: int = 5000
    max_dispatch_workers: int = 64
    namespace: str = "default"
    label_selector: str = "app=k8s-autoscaling"
    hpa_name: str = "k8s-autoscaling-hpa"
    service_name: str = "k8s-autoscaling-service"
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "StressConfig":
        """Build a config from the environment (or an explicit mapping)."""
        raw = _load_config(environ)
        config = cls(**{FIELD_BY_KEY[key]: value for key, value in raw.items()})
        config.validate()
        return config

    def with_overrides(self, overrides: Optional[dict]) -> "StressConfig":
        """
        Return a copy with the given overrides applied.

        Keys may be field names (``ramp_up_ms``) or environment keys
        (``RAMP_UP_MS``). Unknown keys and uncastable values raise ConfigError.
        """
        if not overrides:
            return self
        if not isinstance(overrides, dict):
            raise ConfigError("Overrides must be a mapping of setting names to values")
        field_types = {f.name: f for f in fields(self)}
        changes = {}
        for key, value in overrides.items():
            name = FIELD_BY_KEY.get(str(key).upper(), key)
            if name not in field_types:
                raise ConfigError(f"Unknown configuration key: {key}")
            current = getattr(self, name)
            try:
                if isinstance(current, bool):
                    changes[name] = value if isinstance(value, bool) else _coerce_bool(value)
                elif isinstance(current, tuple):
                    changes[name] = _coerce_delays(value)
                else:
                    changes[name] = type(current)(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> None:
        non_negative = (
            "warm_up_ms", "ramp_up_ms", "steady_ms", "ramp_down_ms",
            "work_duration_ms", "idle_sleep_cap_ms", "remote_stop_hold_ms",
            "intensity_timeout_buffer_ms",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")
        positive = (
            "concurrency", "chunk_duration_ms", "stream_chunk_ms",
            "iterations_per_chunk", "intensity_steps", "suite_iterations",
            "metrics_poll_ms", "fetch_timeout_ms", "stop_signal_timeout_ms",
            "stop_poll_ms", "max_dispatch_workers",
        )
        for name in positive:
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if self.rounds < 0:
            raise ConfigError("rounds must be >= 0")
        if any(delay < 0 for delay in self.stop_wave_delays_ms):
            raise ConfigError("stop_wave_delays_ms must not contain negative delays")

    @property
    def ramp_step_ms(self) -> int:
        return self.ramp_up_ms // self.intensity_steps

    @property
    def total_phase_ms(self) -> int:
        return self.warm_up_ms + self.ramp_up_ms + self.steady_ms + self.ramp_down_ms

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stop_wave_delays_ms"] = list(self.stop_wave_delays_ms)
        return data
