"""Distributed CPU stress-test orchestration for autoscaling experiments."""

__version__ = "1.0.0"
