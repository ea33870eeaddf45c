from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, Optional, Tuple

from rental_market.config import Config

_SAMPLE_WINDOW = 500

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def _labels_tuple(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


@dataclass
class Histogram:
    """Running summary plus a window of recent samples for percentiles."""

    count: int = 0
    total: float = 0.0
    min_value: float = field(default=float("inf"))
    max_value: float = field(default=float("-inf"))
    recent: Deque[float] = field(default_factory=lambda: deque(maxlen=_SAMPLE_WINDOW))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)
        self.recent.append(value)

    def percentile(self, pct: float) -> Optional[float]:
        if not self.recent:
            return None
        ordered = sorted(self.recent)
        index = min(int(round(pct / 100 * (len(ordered) - 1))), len(ordered) - 1)
        return ordered[index]

    def snapshot(self) -> Dict[str, Any]:
        avg = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "avg": avg,
            "min": None if self.count == 0 else self.min_value,
            "max": None if self.count == 0 else self.max_value,
            "p95": self.percentile(95),
        }


_metrics_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: list[Dict[str, Any]] = []
_max_events = 200


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _metrics_lock:
        _counters[(name, _labels_tuple(labels))] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _metrics_lock:
        _gauges[(name, _labels_tuple(labels))] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _metrics_lock:
        key = (name, _labels_tuple(labels))
        histogram = _histograms.setdefault(key, Histogram())
        histogram.observe(value)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    event = {"name": name, "timestamp": time.time(), "payload": payload}
    with _metrics_lock:
        _events.append(event)
        if len(_events) > _max_events:
            _events.pop(0)


def get_counter_total(name: str) -> float:
    """Sum a counter across all of its label sets."""
    with _metrics_lock:
        return sum(value for (metric, _), value in _counters.items() if metric == name)


def get_metrics_snapshot() -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {"counters": {}, "gauges": {}, "histograms": {}}
    with _metrics_lock:
        snapshot["events"] = list(_events)
        for (name, labels), value in _counters.items():
            snapshot["counters"].setdefault(name, []).append({"labels": dict(labels), "value": value})

        for (name, labels), value in _gauges.items():
            snapshot["gauges"].setdefault(name, []).append({"labels": dict(labels), "value": value})

        for (name, labels), histogram in _histograms.items():
            snapshot["histograms"].setdefault(name, []).append(
                {"labels": dict(labels), "stats": histogram.snapshot()}
            )

    return snapshot


def reset_metrics() -> None:
    """Testing helper."""
    with _metrics_lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()


@contextmanager
def timed(name: str, labels: Optional[Dict[str, str]] = None) -> Iterator[None]:
    """Record the wall time of the block, in milliseconds, whether or not it raises."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_latency(name, (time.perf_counter() - started) * 1000, labels)
