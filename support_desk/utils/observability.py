from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, List

MetricsSnapshot = Dict[str, Dict[str, float]]


_EVENT_LATENCY_SLO_P95 = {
    "join_conversation": 500.0,
    "send_message": 500.0,
    "leave_conversation": 250.0,
}


class RequestMetrics:
    """Latency and counters for REST endpoints and real-time events."""

    def __init__(self, percentile_window: int = 200) -> None:
        self._counts: Dict[str, int] = defaultdict(int)
        self._latency_sum: Dict[str, float] = defaultdict(float)
        self._latency_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=percentile_window))
        self._event_counts: Dict[str, int] = defaultdict(int)
        self._event_latency_sum: Dict[str, float] = defaultdict(float)
        self._event_latency_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=percentile_window))
        self._event_errors: Dict[str, int] = defaultdict(int)
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}

    def record(self, endpoint: str, duration_ms: float) -> None:
        self._counts[endpoint] += 1
        self._latency_sum[endpoint] += duration_ms
        self._latency_samples[endpoint].append(duration_ms)

    def record_event(self, event: str, duration_ms: float, *, failed: bool = False) -> None:
        self._event_counts[event] += 1
        self._event_latency_sum[event] += duration_ms
        self._event_latency_samples[event].append(duration_ms)
        if failed:
            self._event_errors[event] += 1

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        self._counters[name] += amount

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = float(value)

    def counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def snapshot(self) -> MetricsSnapshot:
        data: MetricsSnapshot = {}
        for endpoint, count in self._counts.items():
            percentiles = _compute_percentiles(list(self._latency_samples[endpoint]))
            data[endpoint] = {
                "count": float(count),
                "avg_latency_ms": (self._latency_sum[endpoint] / count) if count else 0.0,
                "p50_latency_ms": percentiles.get(50, 0.0),
                "p95_latency_ms": percentiles.get(95, 0.0),
            }
        events: Dict[str, Dict[str, Any]] = {}
        for event, count in self._event_counts.items():
            percentiles = _compute_percentiles(list(self._event_latency_samples[event]))
            p95 = percentiles.get(95, 0.0)
            block: Dict[str, Any] = {
                "count": float(count),
                "errors": float(self._event_errors.get(event, 0)),
                "avg_latency_ms": (self._event_latency_sum[event] / count) if count else 0.0,
                "p50_latency_ms": percentiles.get(50, 0.0),
                "p95_latency_ms": p95,
            }
            slo = _EVENT_LATENCY_SLO_P95.get(event)
            if slo is not None:
                block["slo_p95_ms"] = slo
                block["status"] = classify_latency(p95, slo)
            events[event] = block
        if events:
            data["events"] = events
        if self._counters:
            data["counters"] = dict(self._counters)
        if self._gauges:
            data["gauges"] = dict(self._gauges)
        return data

    def reset(self) -> None:
        self._counts.clear()
        self._latency_sum.clear()
        self._latency_samples.clear()
        self._event_counts.clear()
        self._event_latency_sum.clear()
        self._event_latency_samples.clear()
        self._event_errors.clear()
        self._counters.clear()
        self._gauges.clear()


@contextmanager
def time_event(metrics: "RequestMetrics", event: str) -> Iterator[Dict[str, bool]]:
    """Time a gateway event; set ``outcome["failed"] = True`` inside the block to count an error."""

    outcome = {"failed": False}
    start = time.perf_counter()
    try:
        yield outcome
    finally:
        metrics.record_event(event, (time.perf_counter() - start) * 1000, failed=outcome["failed"])


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        index = min(max(index, 0), len(ordered) - 1)
        results[percentile] = ordered[index]
    return results


def classify_latency(value: float, slo: float) -> str:
    if value <= slo:
        return "green"
    if value <= slo * 1.25:
        return "amber"
    return "red"


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS
