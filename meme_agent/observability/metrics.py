"""In-process metrics for the agent's loop, cache and executor.

Counters, gauges and histograms live in memory only; ``snapshot()``
feeds the ``status`` command and the CLI summary.  Histories are capped
so a long-running auto session stays bounded.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

_MAX_EVENTS = 10_000
_MAX_SAMPLES = 2_000  # per histogram


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Linear-interpolated percentile of pre-sorted data."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo, hi = math.floor(k), math.ceil(k)
    if lo == hi:
        return sorted_data[lo]
    return sorted_data[lo] * (hi - k) + sorted_data[hi] * (k - lo)


def _summarize(samples: deque[float]) -> dict[str, float]:
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}
    s = sorted(samples)
    return {
        "count": len(s),
        "min": s[0],
        "max": s[-1],
        "avg": round(sum(s) / len(s), 6),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
    }


@dataclass(frozen=True)
class MetricPoint:
    name: str
    value: float
    tags: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class MetricsCollector:
    """Thread-safe collector; the asyncio loop and to_thread workers share it."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=_MAX_SAMPLES))
        self._events: deque[MetricPoint] = deque(maxlen=_MAX_EVENTS)

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[name] += value
            self._events.append(MetricPoint(name, value, tags))

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[name] = value
            self._events.append(MetricPoint(name, value, tags))

    def histogram(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._histograms[name].append(value)
            self._events.append(MetricPoint(name, value, tags))

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def counters(self, prefix: str = "") -> dict[str, float]:
        with self._lock:
            return {k: v for k, v in sorted(self._counters.items()) if k.startswith(prefix)}

    def recent(self, name: str, limit: int = 20) -> list[MetricPoint]:
        """Most recent points recorded under ``name``, newest last."""
        with self._lock:
            points = [p for p in self._events if p.name == name]
        return points[-limit:]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {k: _summarize(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._events.clear()


metrics = MetricsCollector()
