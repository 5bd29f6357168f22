"""
In-process metrics for the thumbnail service.

Counters (traffic, errors, outcomes), latency samples per operation,
gauges, and a short ring of recent errors for debugging.  Everything is
ephemeral and resets on restart; /metrics serves get_snapshot().
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# Last MAX_SAMPLES latencies per operation
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'requests.generate', 'errors.timeout')."""
    with _lock:
        _counters[name] += amount


def record_latency(operation: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[operation]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[operation] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(operation: str, error_type: str, message: str, user_id: str = ""):
    """Keep the most recent failures for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "operation": operation,
            "error_type": error_type,
            "message": message[:300],
            "user_id": user_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def _percentiles(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        requests = sum(v for k, v in _counters.items() if k.startswith("requests."))
        errors = sum(v for k, v in _counters.items() if k.startswith("errors."))
        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {op: _percentiles(s) for op, s in _latency_samples.items() if s},
            "error_rate": round(errors / requests * 100, 2) if requests else 0,
            "recent_errors": list(_recent_errors[-10:]),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
