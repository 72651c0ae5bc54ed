"""Minimal in-process counters and latency histograms.

No external dependencies. Used for provider call latency, enrichment
degradations and booking outcomes; a scraper can read the snapshot.
"""

from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional, Tuple, List
import threading
import time


_LOCK = threading.Lock()

LabelKey = Tuple[Tuple[str, str], ...]

# (name, labels) -> count
_COUNTERS: Dict[Tuple[str, LabelKey], int] = {}

# Provider calls are slow: buckets span 100ms .. 45s (multi-city search ceiling)
_DEFAULT_BUCKETS_MS: List[int] = [100, 250, 500, 1000, 2500, 5000, 10000, 30000, 45000]

# name -> labels -> {"counts": [...], "sum_ms": float}
_HISTOGRAMS: Dict[str, Dict[LabelKey, Dict[str, Any]]] = {}


def _labels_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def inc_counter(metric: str, labels: Optional[Dict[str, str]] = None, amount: int = 1) -> None:
    key = (metric, _labels_key(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0) + amount


def record_timing(metric: str, value_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
    if value_ms is None:
        return
    bucket = len(_DEFAULT_BUCKETS_MS)
    for i, upper in enumerate(_DEFAULT_BUCKETS_MS):
        if value_ms <= upper:
            bucket = i
            break
    with _LOCK:
        series = _HISTOGRAMS.setdefault(metric, {})
        entry = series.get(_labels_key(labels))
        if entry is None:
            entry = {"counts": [0] * (len(_DEFAULT_BUCKETS_MS) + 1), "sum_ms": 0.0}
            series[_labels_key(labels)] = entry
        entry["counts"][bucket] += 1
        entry["sum_ms"] += float(value_ms)


@contextmanager
def timed(metric: str, labels: Optional[Dict[str, str]] = None) -> Iterator[None]:
    """Record the wall time of the enclosed block, including failed blocks."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_timing(metric, (time.monotonic() - start) * 1000.0, labels)


def get_metrics_snapshot() -> Dict[str, Any]:
    with _LOCK:
        counters = [
            {"name": name, "labels": dict(labels), "value": value}
            for (name, labels), value in _COUNTERS.items()
        ]
        histograms = [
            {
                "name": name,
                "labels": dict(labels),
                "buckets_ms": list(_DEFAULT_BUCKETS_MS),
                "counts": list(entry["counts"]),
                "sum_ms": entry["sum_ms"],
            }
            for name, series in _HISTOGRAMS.items()
            for labels, entry in series.items()
        ]
    return {"counters": counters, "histograms": histograms}


def reset_metrics() -> None:
    with _LOCK:
        _COUNTERS.clear()
        _HISTOGRAMS.clear()
