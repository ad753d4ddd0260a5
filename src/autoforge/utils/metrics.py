"""Metrics collection for observability.

Tracks healing, testing and deployment activity:
- Fix attempts by outcome and backups taken
- Suite results by category and status
- Deployments by environment and status
- Reasoning-service requests, errors and latency

Metrics are Prometheus-compatible and exported in text format.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from threading import Lock
from typing import Any

import structlog

log = structlog.get_logger()

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted(labels.items())) if labels else ()


class MetricType(StrEnum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricValue:
    """A single metric value with metadata."""

    name: str
    type: MetricType
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    help_text: str = ""


class _LabelledMetric:
    """Shared storage for counters and gauges keyed by label set."""

    type: MetricType

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def _add(self, value: float, labels: dict[str, str] | None) -> None:
        with self._lock:
            self._values[_label_key(labels)] += value

    def get(self, labels: dict[str, str] | None = None) -> float:
        """Get the current value for a label set."""
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def total(self) -> float:
        """Sum across every label set."""
        with self._lock:
            return sum(self._values.values())

    def get_all(self) -> list[MetricValue]:
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    type=self.type,
                    value=value,
                    labels=dict(label_key),
                    help_text=self.help_text,
                )
                for label_key, value in self._values.items()
            ]


class Counter(_LabelledMetric):
    """A monotonically increasing counter.

    Example:
        counter = Counter("fix_attempts_total", "Fix attempts by outcome")
        counter.inc(labels={"status": "applied"})
    """

    type = MetricType.COUNTER

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._add(value, labels)


class Gauge(_LabelledMetric):
    """A metric that can go up or down.

    Example:
        gauge = Gauge("active_healing_sweeps", "Healing sweeps in flight")
        gauge.inc()
        gauge.dec()
    """

    type = MetricType.GAUGE

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._values[_label_key(labels)] = value

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        self._add(-value, labels)


class Histogram:
    """A histogram metric for tracking value distributions.

    Example:
        histogram = Histogram("deployment_duration_seconds", "Deployment duration")
        histogram.observe(42.0, labels={"environment": "staging"})
    """

    DEFAULT_BUCKETS = (0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str = "",
        buckets: tuple[float, ...] | None = None,
    ) -> None:
        self.name = name
        self.help_text = help_text
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._observations: dict[LabelKey, list[float]] = defaultdict(list)
        self._lock = Lock()

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._observations[_label_key(labels)].append(value)

    def get_stats(self, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Get count, sum, min, max and mean for a label set."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "mean": 0}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": sum(values) / len(values),
        }

    def get_buckets(self, labels: dict[str, str] | None = None) -> dict[float, int]:
        """Get per-bucket (non-cumulative) counts for a label set."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        bucket_counts: dict[float, int] = dict.fromkeys(self._buckets, 0)
        for value in values:
            for bucket in self._buckets:
                if value <= bucket:
                    bucket_counts[bucket] += 1
                    break

        return bucket_counts


class MetricsRegistry:
    """Registry for all framework metrics.

    Example:
        registry = MetricsRegistry.get_instance()
        registry.fix_attempts.inc(labels={"status": "applied"})
        print(registry.to_prometheus_format())
    """

    _instance: MetricsRegistry | None = None
    _lock = Lock()

    def __init__(self) -> None:
        # Healing
        self.errors_detected = Counter(
            "autoforge_errors_detected_total",
            "Errors reported by analyzers and detection hooks",
        )
        self.fix_attempts = Counter(
            "autoforge_fix_attempts_total",
            "Fix attempts by outcome",
        )
        self.backups_created = Counter(
            "autoforge_backups_created_total",
            "Working-tree snapshots taken",
        )
        self.restores = Counter(
            "autoforge_restores_total",
            "Working-tree restores from a snapshot",
        )
        self.active_sweeps = Gauge(
            "autoforge_active_healing_sweeps",
            "Healing sweeps currently running",
        )
        self.sweep_duration = Histogram(
            "autoforge_healing_sweep_duration_seconds",
            "Healing sweep duration in seconds",
        )

        # Testing
        self.suite_results = Counter(
            "autoforge_test_suites_total",
            "Test suites by category and status",
        )

        # Deployment
        self.deployments = Counter(
            "autoforge_deployments_total",
            "Deployments by environment and terminal status",
        )
        self.deployment_duration = Histogram(
            "autoforge_deployment_duration_seconds",
            "Deployment duration in seconds",
        )

        # Reasoning service
        self.reasoning_requests = Counter(
            "autoforge_reasoning_requests_total",
            "Reasoning service requests",
        )
        self.reasoning_errors = Counter(
            "autoforge_reasoning_errors_total",
            "Reasoning service errors",
        )
        self.reasoning_duration = Histogram(
            "autoforge_reasoning_request_duration_seconds",
            "Reasoning request duration in seconds",
        )

        self._start_time = time.time()

    @classmethod
    def get_instance(cls) -> MetricsRegistry:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next call starts from zero."""
        with cls._lock:
            cls._instance = None

    def get_uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def _labelled(self) -> list[_LabelledMetric]:
        return [
            self.errors_detected,
            self.fix_attempts,
            self.backups_created,
            self.restores,
            self.active_sweeps,
            self.suite_results,
            self.deployments,
            self.reasoning_requests,
            self.reasoning_errors,
        ]

    def get_all_metrics(self) -> dict[str, Any]:
        """Get a summary of all metrics as a dictionary."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "healing": {
                "errors_detected": self.errors_detected.total(),
                "fix_attempts": {
                    m.labels.get("status", ""): m.value for m in self.fix_attempts.get_all()
                },
                "backups_created": self.backups_created.total(),
                "restores": self.restores.total(),
                "active_sweeps": self.active_sweeps.total(),
                "sweep_duration": self.sweep_duration.get_stats(),
            },
            "testing": {
                "suites": [
                    {**m.labels, "count": m.value} for m in self.suite_results.get_all()
                ],
            },
            "deployment": {
                "deployments": [{**m.labels, "count": m.value} for m in self.deployments.get_all()],
                "duration": self.deployment_duration.get_stats(),
            },
            "reasoning": {
                "requests": self.reasoning_requests.total(),
                "errors": self.reasoning_errors.total(),
                "duration": self.reasoning_duration.get_stats(),
            },
        }

    def to_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: list[str] = []

        for metric in self._labelled():
            if metric.help_text:
                lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.type.value}")
            for value in metric.get_all():
                if value.labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{metric.name}{{{label_str}}} {value.value}")
                else:
                    lines.append(f"{metric.name} {value.value}")

        lines.append("# HELP autoforge_uptime_seconds Framework uptime in seconds")
        lines.append("# TYPE autoforge_uptime_seconds gauge")
        lines.append(f"autoforge_uptime_seconds {self.get_uptime_seconds()}")

        return "\n".join(lines)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    return MetricsRegistry.get_instance()


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer(metrics.sweep_duration):
            await orchestrator.heal_app(app)
    """

    def __init__(
        self,
        histogram: Histogram,
        labels: dict[str, str] | None = None,
    ) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._start is not None:
            self.elapsed = time.perf_counter() - self._start
            self._histogram.observe(self.elapsed, labels=self._labels)
