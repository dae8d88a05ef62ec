"""
Minimal metrics collection for the aggregation engine.

Counters, gauges and histograms without external dependencies. Exposed via
/api/metrics in Prometheus text format.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps


@dataclass
class Counter:
    """Thread-safe counter metric."""

    name: str
    description: str
    _value: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass
class Gauge:
    """Thread-safe gauge metric."""

    name: str
    description: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


@dataclass
class Histogram:
    """Simple histogram for timing metrics. Keeps the last 1000 observations."""

    name: str
    description: str
    _values: list[float] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def observe(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            if len(self._values) > 1000:
                self._values = self._values[-1000:]

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._values)

    @property
    def sum(self) -> float:
        with self._lock:
            return sum(self._values) if self._values else 0.0

    @property
    def avg(self) -> float:
        with self._lock:
            return sum(self._values) / len(self._values) if self._values else 0.0


class MetricsRegistry:
    """Central registry for all metrics."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, description)
            return self._counters[name]

    def gauge(self, name: str, description: str = "") -> Gauge:
        """Get or create a gauge."""
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name, description)
            return self._gauges[name]

    def histogram(self, name: str, description: str = "") -> Histogram:
        """Get or create a histogram."""
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, description)
            return self._histograms[name]

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                c = self._counters[name]
                if c.description:
                    lines.append(f"# HELP {name} {c.description}")
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {c.value}")

            for name in sorted(self._gauges):
                g = self._gauges[name]
                if g.description:
                    lines.append(f"# HELP {name} {g.description}")
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{name} {g.value}")

            for name in sorted(self._histograms):
                h = self._histograms[name]
                if h.description:
                    lines.append(f"# HELP {name} {h.description}")
                lines.append(f"# TYPE {name} summary")
                lines.append(f"{name}_count {h.count}")
                lines.append(f"{name}_sum {h.sum}")

        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, dict[str, float | int | str]]:
        result: dict[str, dict[str, float | int | str]] = {}
        with self._lock:
            for name, c in self._counters.items():
                result[name] = {"type": "counter", "value": c.value}
            for name, g in self._gauges.items():
                result[name] = {"type": "gauge", "value": g.value}
            for name, h in self._histograms.items():
                result[name] = {"type": "histogram", "count": h.count, "sum": h.sum, "avg": h.avg}
        return result


REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return REGISTRY


# Engine metrics
cache_hits = REGISTRY.counter("aggregate_cache_hits_total", "Aggregate reads served fresh")
cache_misses = REGISTRY.counter("aggregate_cache_misses_total", "Aggregate reads with no record")
cache_stale_serves = REGISTRY.counter(
    "aggregate_cache_stale_serves_total", "Aggregate reads served stale"
)
refresh_runs = REGISTRY.counter("aggregate_refresh_runs_total", "Aggregate recomputes completed")
refresh_failures = REGISTRY.counter("aggregate_refresh_failures_total", "Aggregate recompute failures")
refresh_timeouts = REGISTRY.counter("aggregate_refresh_timeouts_total", "Aggregate recompute timeouts")
refresh_coalesced = REGISTRY.counter(
    "aggregate_refresh_coalesced_total", "Refresh requests merged into an in-flight job"
)
refresh_duration = REGISTRY.histogram("aggregate_refresh_duration_seconds", "Aggregate recompute time")
transient_duration = REGISTRY.histogram(
    "transient_rollup_duration_seconds", "Uncached space/component rollup time"
)
store_reads = REGISTRY.counter("entity_store_reads_total", "Entity store read calls")
traversal_sessions = REGISTRY.gauge("traversal_sessions_active", "Open traversal sessions")


def timed(histogram: Histogram) -> Callable:
    """Decorator to time function execution."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                histogram.observe(time.perf_counter() - start)

        return wrapper

    return decorator
