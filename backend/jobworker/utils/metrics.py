"""
Basic in-memory metrics counters for observability.

Provides simple counters for key operational metrics:
- jobs_claimed_total: Counter of successful claims per queue
- job_outcomes_total: Counter of committed outcomes by queue and status
- job_duration_seconds: Histogram of handler wall time
- job_timeouts_total / claim_conflicts_total / store_errors_total
- subscription_failures_total: Counter of push-channel failures
"""
import re as _re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any
import logging

logger = logging.getLogger("jobworker.metrics")

# Observations kept per histogram key for the p95 estimate.
HISTOGRAM_WINDOW = 1024


@dataclass
class _Histogram:
    """Running totals plus a bounded window of recent observations."""

    count: int = 0
    total: float = 0.0
    min: float = 0.0
    max: float = 0.0
    recent: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))

    def observe(self, value: float) -> None:
        if self.count == 0:
            self.min = self.max = value
        else:
            self.min = min(self.min, value)
            self.max = max(self.max, value)
        self.count += 1
        self.total += value
        self.recent.append(value)


class MetricsCollector:
    """In-memory counters and histograms for one worker process.

    Memory stays flat however many jobs run: each histogram keeps running
    totals and at most ``HISTOGRAM_WINDOW`` recent samples.
    """

    def __init__(self):
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, _Histogram] = defaultdict(_Histogram)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        """Increment a counter metric."""
        key = self._build_key(name, labels)
        self.counters[key] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        """Record a histogram observation."""
        key = self._build_key(name, labels)
        self.histograms[key].observe(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Get current counter value."""
        key = self._build_key(name, labels)
        return self.counters.get(key, 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """Histogram statistics; p95 covers only the recent window."""
        key = self._build_key(name, labels)
        hist = self.histograms.get(key)

        if hist is None or hist.count == 0:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        recent = sorted(hist.recent)
        p95_idx = max(0, int(len(recent) * 0.95) - 1)
        return {
            "count": hist.count,
            "sum": hist.total,
            "min": hist.min,
            "max": hist.max,
            "avg": hist.total / hist.count,
            "p95": recent[p95_idx],
        }

    def get_all_metrics(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        return {
            "counters": dict(self.counters),
            "histograms": {k: self.get_histogram_stats(k) for k in self.histograms.keys()},
        }

    def reset(self):
        """Reset all metrics."""
        self.counters.clear()
        self.histograms.clear()

    @staticmethod
    def _build_key(name: str, labels: dict[str, str] | None) -> str:
        """Build metric key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector instance
metrics = MetricsCollector()


def record_job_claimed(queue: str):
    metrics.increment_counter("jobs_claimed_total", labels={"queue": queue})


def record_job_outcome(queue: str, status: str, duration_seconds: float | None = None):
    """
    Record a committed job outcome.

    Args:
        queue: Queue the job belongs to
        status: Outcome status (SUCCESS, RETRY, ERROR)
        duration_seconds: Handler wall time, when the handler ran
    """
    metrics.increment_counter("job_outcomes_total", labels={"queue": queue, "status": status})
    if duration_seconds is not None:
        metrics.observe_histogram("job_duration_seconds", duration_seconds, labels={"queue": queue})


def record_job_timeout(queue: str, timeout_ms: int):
    metrics.increment_counter("job_timeouts_total", labels={"queue": queue})
    logger.debug("Job timeout recorded: queue=%s timeout_ms=%d", queue, timeout_ms)


def record_claim_conflict(queue: str):
    metrics.increment_counter("claim_conflicts_total", labels={"queue": queue})


def record_store_error(operation: str):
    metrics.increment_counter("store_errors_total", labels={"operation": operation})


def record_subscription_failure(queue: str, status: str):
    metrics.increment_counter("subscription_failures_total", labels={"queue": queue, "status": status})


def get_metrics_summary() -> dict:
    """Get a summary of all metrics."""
    return metrics.get_all_metrics()


def _parse_metric_key(key: str) -> tuple[str, str]:
    """Split an internal metric key into (base_name, prometheus_label_string).

    Internal keys are produced by ``MetricsCollector._build_key`` in the form
    ``name`` or ``name{k1=v1,k2=v2}`` (values are unquoted).
    """
    m = _re.match(r'^([^{]+)(?:\{(.+)\})?$', key)
    if not m:
        return key, ""
    base_name = m.group(1)
    raw_labels = m.group(2) or ""
    if not raw_labels:
        return base_name, ""
    label_parts: list[str] = []
    for pair in raw_labels.split(","):
        if "=" in pair:
            k, v = pair.split("=", 1)
            label_parts.append(f'{k.strip()}="{v.strip()}"')
    label_str = "{" + ",".join(label_parts) + "}" if label_parts else ""
    return base_name, label_str


def _append_quantile_label(label_str: str, quantile: str) -> str:
    """Merge a quantile key-value into an existing Prometheus label block."""
    q_pair = f'quantile="{quantile}"'
    if label_str:
        return label_str[:-1] + "," + q_pair + "}"
    return "{" + q_pair + "}"


def to_prometheus_text() -> str:
    """Render all in-memory metrics as Prometheus text exposition format.

    Each metric family has exactly one ``# TYPE`` line; histograms are
    rendered as summaries with count, sum, p95 and max.
    """
    summary = get_metrics_summary()
    lines: list[str] = []

    counter_families: dict[str, list[tuple[str, int]]] = defaultdict(list)
    for key, val in summary.get("counters", {}).items():
        base_name, label_str = _parse_metric_key(key)
        counter_families["jobworker_" + base_name].append((label_str, val))
    for prom_name, entries in counter_families.items():
        lines.append(f"# TYPE {prom_name} counter")
        for label_str, val in entries:
            lines.append(f"{prom_name}{label_str} {val}")

    histogram_families: dict[str, list[tuple[str, dict]]] = defaultdict(list)
    for key, stats in summary.get("histograms", {}).items():
        base_name, label_str = _parse_metric_key(key)
        histogram_families["jobworker_" + base_name].append((label_str, stats))
    for prom_name, entries in histogram_families.items():
        lines.append(f"# TYPE {prom_name} summary")
        for label_str, stats in entries:
            lines.append(f"{prom_name}_count{label_str} {stats['count']}")
            lines.append(f"{prom_name}_sum{label_str} {stats['sum']:.6f}")
            q_label = _append_quantile_label(label_str, "0.95")
            lines.append(f"{prom_name}{q_label} {stats['p95']:.6f}")
            q_label = _append_quantile_label(label_str, "1.0")
            lines.append(f"{prom_name}{q_label} {stats['max']:.6f}")
    return "\n".join(lines) + "\n"
