# =============================================
# File: app/utils/metrics.py
# Purpose: In-process counters & histograms for /metrics (pipeline, cache, advisor, live feed)
# =============================================
from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, List
import threading
import time

# One registry per process; all mutation under this lock
_lock = threading.Lock()

_COUNTER_NAMES = (
    "events_total",
    "ingest_failures_total",
    "cache_hits_total",
    "cache_misses_total",
    "advisor_calls_total",
    "advisor_failures_total",
    "suggestions_total",
    "publishes_total",
)
_counters: Dict[str, int] = {name: 0 for name in _COUNTER_NAMES}

_tier_counts: Dict[str, int] = {"fast": 0, "slow": 0, "critical": 0}
_kind_counts: Dict[str, int] = {}   # SELECT/INSERT/... -> count
_live_connections = 0


class _Histogram:
    """Fixed upper-bound buckets plus an overflow (+Inf) slot."""

    def __init__(self, bounds: List[int]) -> None:
        self.bounds = list(bounds)
        self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
                return
        self.counts[-1] += 1

    def clear(self) -> None:
        self.counts = [0] * (len(self.bounds) + 1)

    def as_dict(self) -> Dict[str, list]:
        return {"buckets": self.bounds + ["+Inf"], "counts": list(self.counts)}


# query execution time, ms; tier thresholds (100/200) fall on bucket edges
_execution_ms = _Histogram([50, 100, 200, 500, 1000, 2000, 5000])

# Per-endpoint request latency, last N samples per "METHOD /path"
_MAX_SAMPLES = 1000
_endpoint_samples: Dict[str, Deque[float]] = {}
_endpoint_counts: Dict[str, int] = {}


def _percentile(values: List[float], q: float) -> float:
    if not values:
        return 0.0
    xs = sorted(values)
    return xs[int(q * (len(xs) - 1))]

def incr(name: str, by: int = 1) -> None:
    with _lock:
        _counters[name] = _counters.get(name, 0) + by

def record_event(kind: str, tier: str, execution_time_ms: int) -> None:
    """One persisted query event."""
    with _lock:
        _counters["events_total"] += 1
        _tier_counts[tier] = _tier_counts.get(tier, 0) + 1
        _kind_counts[kind] = _kind_counts.get(kind, 0) + 1
        _execution_ms.observe(int(execution_time_ms))

def connection_opened() -> None:
    global _live_connections
    with _lock:
        _live_connections += 1

def connection_closed() -> None:
    global _live_connections
    with _lock:
        _live_connections = max(0, _live_connections - 1)

def record_endpoint(method: str, path: str, latency_ms: float) -> None:
    key = f"{method.upper()} {path}"
    with _lock:
        _endpoint_counts[key] = _endpoint_counts.get(key, 0) + 1
        _endpoint_samples.setdefault(key, deque(maxlen=_MAX_SAMPLES)).append(float(latency_ms))


def snapshot() -> Dict[str, Any]:
    with _lock:
        endpoints: Dict[str, Dict[str, float]] = {}
        for key, samples in _endpoint_samples.items():
            values = list(samples)
            endpoints[key] = {
                "count": float(_endpoint_counts.get(key, 0)),
                "avg_latency_ms": sum(values) / len(values) if values else 0.0,
                "p95_latency_ms": _percentile(values, 0.95),
            }
        return {
            "counters": dict(_counters),
            "tiers": dict(_tier_counts),
            "kinds": dict(_kind_counts),
            "live_connections": _live_connections,
            "execution_time_ms": _execution_ms.as_dict(),
            "performance": {
                "endpoints": endpoints,
                "generated_at": time.time(),
            },
        }

def reset() -> None:
    """Zero everything (tests)."""
    global _live_connections
    with _lock:
        for name in _counters:
            _counters[name] = 0
        for tier in _tier_counts:
            _tier_counts[tier] = 0
        _kind_counts.clear()
        _live_connections = 0
        _execution_ms.clear()
        _endpoint_samples.clear()
        _endpoint_counts.clear()
