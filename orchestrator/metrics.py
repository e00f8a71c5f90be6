"""Process-local counters and latency samples, served at /metrics/snapshot."""

from __future__ import annotations

import math
import threading
from collections import Counter, defaultdict
from typing import Dict, List

_LOCK = threading.Lock()
_COUNTERS: Counter = Counter()
_SAMPLES: Dict[str, List[float]] = defaultdict(list)

# A window with more bad outcomes than good ones plus this margin is a spike.
SPIKE_MARGIN = 5


def incr(name: str, amount: int = 1) -> None:
    with _LOCK:
        _COUNTERS[name] += amount


def timing(name: str, duration_seconds: float) -> None:
    with _LOCK:
        _SAMPLES[name].append(duration_seconds)


def reset() -> None:
    with _LOCK:
        _COUNTERS.clear()
        _SAMPLES.clear()


def _nearest_rank_ms(ordered: List[float], pct: int) -> float:
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return round(ordered[rank - 1] * 1000, 3)


def snapshot() -> Dict[str, object]:
    with _LOCK:
        counters = dict(_COUNTERS)
        samples = {name: sorted(values) for name, values in _SAMPLES.items()}
    return {
        "counters": counters,
        "timings": {
            name: {"count": len(values), "p50_ms": _nearest_rank_ms(values, 50), "p95_ms": _nearest_rank_ms(values, 95)}
            for name, values in samples.items()
        },
        "spikes": _spikes(counters),
    }


def _spikes(counters: Dict[str, int]) -> Dict[str, object]:
    executed = counters.get("decision_executed", 0)
    failures = counters.get("decision_failed", 0) + counters.get("classifier_timeout", 0)
    throttled = counters.get("rate_limited", 0)
    return {
        "decision_failure_spike": failures > executed + SPIKE_MARGIN,
        "rate_limit_spike": throttled > executed + SPIKE_MARGIN,
        "failures": failures,
        "throttled": throttled,
        "successes": executed,
    }
