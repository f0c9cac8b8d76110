"""
Metrics collection for the x402 distributor.

A thread-safe collector for:
- Counters: distributions by status, failures by error code, dispatches
- Gauges: dispatcher queue depth, active requests
- Histograms: latencies in milliseconds and distributed amounts in lamports

Metrics are exported in Prometheus text format under the ``x402_`` prefix.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

# Milliseconds
LATENCY_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)
# Lamports: 0.0001 SOL .. 1000 SOL
AMOUNT_BUCKETS = (10**5, 10**6, 10**7, 10**8, 10**9, 10**10, 10**11, 10**12)


@dataclass
class Histogram:
    """Cumulative histogram with fixed upper bounds (plus +Inf)."""

    bounds: tuple[float, ...] = LATENCY_BUCKETS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.counts:
            self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
        self.counts[-1] += 1

    def bucket_items(self) -> list[tuple[str, int]]:
        labels = [str(b) for b in self.bounds] + ["+Inf"]
        return list(zip(labels, self.counts))


def _labels_key(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Series are keyed by metric name and a rendered label string, so each
    labelled combination is tracked independently.
    """

    def __init__(self, namespace: str = "x402"):
        self.namespace = namespace
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][_labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(_labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] = value

    def adjust_gauge(
        self, name: str, delta: float, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] += delta

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(_labels_key(labels), 0.0)

    # Histograms

    def observe(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
        bounds: tuple[float, ...] = LATENCY_BUCKETS,
    ) -> None:
        """Record an observation; the first observation fixes the bucket bounds."""
        with self._lock:
            key = _labels_key(labels)
            series = self._histograms[name]
            if key not in series:
                series[key] = Histogram(bounds=bounds)
            series[key].observe(value)

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a latency in milliseconds."""
        self.observe(name, value_ms, labels)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Context manager timing a code block into a latency histogram."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        with self._lock:
            result = {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {},
                "gauges": {},
                "histograms": {},
            }
            for kind, store in (("counters", self._counters), ("gauges", self._gauges)):
                for name, values in store.items():
                    if set(values) == {""}:
                        result[kind][name] = values[""]
                    else:
                        result[kind][name] = dict(values)

            for name, series in self._histograms.items():
                result["histograms"][name] = {
                    (key or "_total"): {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.sum / hist.count if hist.count else 0,
                        "buckets": dict(hist.bucket_items()),
                    }
                    for key, hist in series.items()
                }
            return result

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        ns = self.namespace
        lines = [
            f"# HELP {ns}_uptime_seconds Time since application start",
            f"# TYPE {ns}_uptime_seconds gauge",
        ]

        with self._lock:
            lines.append(f"{ns}_uptime_seconds {time.time() - self._start_time:.2f}")
            lines.append("")

            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric = f"{ns}_{name}"
                    lines.append(f"# TYPE {metric} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric}{{{key}}} {value}" if key else f"{metric} {value}")
                    lines.append("")

            for name, series in self._histograms.items():
                metric = f"{ns}_{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    prefix = f"{key}," if key else ""
                    for le, count in hist.bucket_items():
                        lines.append(f'{metric}_bucket{{{prefix}le="{le}"}} {count}')
                    suffix = f"{{{key}}}" if key else ""
                    lines.append(f"{metric}_sum{suffix} {hist.sum:.2f}")
                    lines.append(f"{metric}_count{suffix} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
