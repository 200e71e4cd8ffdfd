"""Metric registry and the counters recorded by the realtime services."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
