"""In-process metric registry rendered in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Sequence


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _escape(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


class _Metric:
    """Samples keyed by label values, guarded by a lock."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def labels(self, *values: object) -> "_BoundMetric":
        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expects labels {list(self.label_names)}, got {len(values)} values"
            )
        return _BoundMetric(self, tuple(str(value) for value in values))

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def _set(self, key: tuple[str, ...], value: float) -> None:
        with self._lock:
            self._samples[key] = float(value)

    def value(self, *values: object) -> float:
        with self._lock:
            return self._samples.get(tuple(str(value) for value in values), 0.0)

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
            return lines
        for key, value in samples:
            labels = ""
            if self.label_names:
                pairs = ",".join(
                    f'{name}="{_escape(label)}"' for name, label in zip(self.label_names, key)
                )
                labels = "{" + pairs + "}"
            lines.append(f"{self.name}{labels} {_format_value(value)}")
        return lines


class CounterMetric(_Metric):
    metric_type = "counter"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)


class GaugeMetric(_Metric):
    metric_type = "gauge"

    def set(self, value: float) -> None:
        self.labels().set(value)


class _BoundMetric:
    """A metric bound to concrete label values: ``metric.labels("a").inc()``."""

    def __init__(self, metric: _Metric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Increment amount must be non-negative")
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support dec()")
        if amount < 0:
            raise ValueError("Decrement amount must be non-negative")
        self._metric._add(self._key, -amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support set()")
        self._metric._set(self._key, value)


class MetricsRegistry:
    """Collects metrics and renders them for scraping."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = Lock()

    def _register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> CounterMetric:
        metric = CounterMetric(name, description, label_names)
        self._register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> GaugeMetric:
        metric = GaugeMetric(name, description, label_names)
        self._register(metric)
        return metric

    def reset(self) -> None:
        """Drop every recorded sample; registered metrics stay in place."""

        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            with metric._lock:
                metric._samples.clear()

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


# Shared registry instance used across the backend.
registry = MetricsRegistry()
