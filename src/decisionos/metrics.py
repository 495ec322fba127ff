"""Privacy-safe metrics for the decision core.

Counters carry no identifiers: no household keys, session ids, or meal names
appear in label values. Output is Prometheus text format so the registry can
be scraped by whatever outer surface hosts the core.

Metrics collected:
    - decisionos_sessions_started_total: Sessions opened
    - decisionos_sessions_closed_total: Sessions closed, by outcome
    - decisionos_decisions_locked_total: Decision locks won by this process
    - decisionos_rescues_total: Rescues executed, by trigger reason
    - decisionos_fallback_exhausted_total: Rescues that found no fallback
    - decisionos_contract_violations_total: Analyzer rejections, by rule
    - decisionos_readonly_rejections_total: Writes refused in readonly mode
    - decisionos_scoped_noops_total: Tenant-scoped writes/reads matching nothing
    - decisionos_open_sessions: Sessions opened here and not yet closed
    - decisionos_time_to_decision_seconds: Session start to terminal outcome
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


def _label_str(labels: tuple[str, ...], values: tuple[str, ...]) -> str:
    return ",".join(f'{k}="{v}"' for k, v in zip(labels, values, strict=False))


def _render(
    name: str,
    description: str,
    kind: str,
    labels: tuple[str, ...],
    samples: list[tuple[tuple[str, ...], float]],
) -> str:
    lines = [f"# HELP {name} {description}", f"# TYPE {name} {kind}"]
    if not samples:
        lines.append(f"{name} 0")
    for label_values, value in samples:
        if labels and label_values:
            lines.append(f"{name}{{{_label_str(labels, label_values)}}} {value}")
        else:
            lines.append(f"{name} {value}")
    return "\n".join(lines)


@dataclass
class Counter:
    """Thread-safe counter metric."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[tuple[str, ...], float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        """Increment the counter."""
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def get(self, *label_values: str) -> float:
        """Get the current counter value."""
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        with self._lock:
            samples = sorted(self._values.items())
        return _render(self.name, self.description, "counter", self.labels, samples)


@dataclass
class Gauge:
    """Thread-safe gauge metric."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[tuple[str, ...], float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def dec(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) - amount

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        with self._lock:
            samples = sorted(self._values.items())
        return _render(self.name, self.description, "gauge", self.labels, samples)


@dataclass
class Histogram:
    """Thread-safe histogram metric with configurable buckets."""

    name: str
    description: str
    buckets: tuple[float, ...] = (1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0)
    _bucket_counts: dict[float, int] = field(default_factory=dict)
    _sum: float = 0.0
    _count: int = 0
    _lock: Lock = field(default_factory=Lock)

    def observe(self, value: float) -> None:
        """Record an observation."""
        with self._lock:
            if not self._bucket_counts:
                self._bucket_counts = dict.fromkeys(self.buckets, 0)
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1
            self._sum += value
            self._count += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def collect(self) -> str:
        """Collect metric in Prometheus format.

        Bucket counts are already cumulative: `observe` increments every
        bucket whose bound covers the value.
        """
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} histogram",
        ]
        with self._lock:
            for bucket in sorted(self.buckets):
                value = self._bucket_counts.get(bucket, 0)
                lines.append(f'{self.name}_bucket{{le="{bucket}"}} {value}')
            lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
            lines.append(f"{self.name}_sum {self._sum}")
            lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Registry for all decision-core metrics."""

    def __init__(self) -> None:
        self.sessions_started_total = Counter(
            name="decisionos_sessions_started_total",
            description="Total number of sessions started",
        )
        self.sessions_closed_total = Counter(
            name="decisionos_sessions_closed_total",
            description="Total number of sessions closed",
            labels=("outcome",),  # accepted, rescued, abandoned
        )
        self.decisions_locked_total = Counter(
            name="decisionos_decisions_locked_total",
            description="Total number of decision locks written",
        )
        self.decisions_rejected_total = Counter(
            name="decisionos_decisions_rejected_total",
            description="Total number of rejected decisions",
        )
        self.rescues_total = Counter(
            name="decisionos_rescues_total",
            description="Total number of rescues executed",
            labels=("reason",),
        )
        self.fallback_exhausted_total = Counter(
            name="decisionos_fallback_exhausted_total",
            description="Total number of rescues with no fallback available",
        )
        self.contract_violations_total = Counter(
            name="decisionos_contract_violations_total",
            description="Total number of SQL statements rejected by the analyzer",
            labels=("rule",),
        )
        self.readonly_rejections_total = Counter(
            name="decisionos_readonly_rejections_total",
            description="Total number of writes refused in readonly mode",
            labels=("backend",),
        )
        self.scoped_noops_total = Counter(
            name="decisionos_scoped_noops_total",
            description="Tenant-scoped operations that matched no row",
            labels=("backend", "operation"),
        )
        self.open_sessions = Gauge(
            name="decisionos_open_sessions",
            description="Sessions opened by this process and not yet closed",
        )
        self.time_to_decision_seconds = Histogram(
            name="decisionos_time_to_decision_seconds",
            description="Seconds from session start to terminal outcome",
        )

    def collect_all(self) -> str:
        """Collect all metrics in Prometheus format."""
        metrics = [
            self.sessions_started_total.collect(),
            self.sessions_closed_total.collect(),
            self.decisions_locked_total.collect(),
            self.decisions_rejected_total.collect(),
            self.rescues_total.collect(),
            self.fallback_exhausted_total.collect(),
            self.contract_violations_total.collect(),
            self.readonly_rejections_total.collect(),
            self.scoped_noops_total.collect(),
            self.open_sessions.collect(),
            self.time_to_decision_seconds.collect(),
        ]
        return "\n\n".join(metrics) + "\n"


# Process default; components accept an explicit registry for isolation in tests.
metrics = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Return the process-default metrics registry."""
    return metrics
