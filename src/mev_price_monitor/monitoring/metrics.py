"""Thread-safe metrics registry with histogram support."""

from __future__ import annotations

import math
import re
import threading
from collections import defaultdict, deque
from statistics import mean
from typing import TYPE_CHECKING, Deque, Dict, Iterable, List, MutableMapping, Optional

from ..datalake.schemas import MetricEvent

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .event_bus import EventBus

_METRIC_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_:]")


def _sanitize_metric_name(name: str) -> str:
    """Return a Prometheus-safe metric name."""

    sanitized = _METRIC_SANITIZE_RE.sub("_", name)
    if not sanitized:
        return "_"
    if sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


class MetricsRegistry:
    """In-memory metrics store backing the status report and Prometheus export."""

    def __init__(self, *, max_hist_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: MutableMapping[str, float] = {}
        self._histograms: MutableMapping[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_hist_samples)
        )

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def get_gauge(self, name: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(name)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].append(float(value))

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = {key: self._histogram_stats(values) for key, values in self._histograms.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines = []
        for name, value in snap["counters"].items():
            sanitized = _sanitize_metric_name(name)
            lines.append(f"# TYPE {sanitized} counter")
            lines.append(f"{sanitized} {value}")
        for name, value in snap["gauges"].items():
            sanitized = _sanitize_metric_name(name)
            lines.append(f"# TYPE {sanitized} gauge")
            lines.append(f"{sanitized} {value}")
        for name, stats in snap["histograms"].items():
            if not stats:
                continue
            base = _sanitize_metric_name(name)
            lines.append(f"# TYPE {base} summary")
            for quantile in ("p50", "p90", "p99"):
                if quantile in stats:
                    lines.append(f"{base}{{quantile=\"{quantile}\"}} {stats[quantile]}")
            lines.append(f"{base}_count {stats.get('count', 0)}")
            if "avg" in stats:
                lines.append(f"{base}_avg {stats['avg']}")
        return "\n".join(lines) + "\n"

    def _histogram_stats(self, values: Iterable[float]) -> Dict[str, float]:
        data = list(values)
        if not data:
            return {}
        data.sort()
        count = len(data)
        return {
            "count": float(count),
            "avg": mean(data),
            "p50": self._percentile(data, 0.5),
            "p90": self._percentile(data, 0.9),
            "p99": self._percentile(data, 0.99),
        }

    def _percentile(self, data: Iterable[float], percentile: float) -> float:
        items = list(data)
        if not items:
            return 0.0
        index = max(int(math.ceil(percentile * len(items))) - 1, 0)
        return float(items[min(index, len(items) - 1)])


class MetricsRecorder:
    """Turns per-operation outcomes into registry updates and bus events."""

    def __init__(
        self,
        registry: Optional[MetricsRegistry] = None,
        *,
        bus: Optional["EventBus"] = None,
        history_size: int = 256,
    ) -> None:
        self._registry = registry or METRICS
        self._bus = bus
        self._recent: Deque[MetricEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    def record(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        *,
        network: Optional[str] = None,
        venue: Optional[str] = None,
        pair: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> MetricEvent:
        event = MetricEvent(
            operation=operation,
            duration_ms=max(float(duration_ms), 0.0),
            success=success,
            network=network,
            venue=venue,
            pair=pair,
            reason=reason,
        )
        self._registry.increment(f"{operation}.total")
        if not success:
            self._registry.increment(f"{operation}.failures")
        self._registry.observe(f"{operation}.duration_ms", event.duration_ms)
        with self._lock:
            self._recent.append(event)
        if self._bus is not None:
            self._bus.publish("metric", {"event": event})
        return event

    def recent(self, limit: int = 100, *, failures_only: bool = False) -> List[MetricEvent]:
        with self._lock:
            events = list(self._recent)
        if failures_only:
            events = [event for event in events if not event.success]
        return events[-limit:] if limit > 0 else []


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRecorder", "MetricsRegistry"]
