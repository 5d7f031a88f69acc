"""
In-process telemetry for the insight pipeline.

Counters and latency samples live in memory only; they back `get_stats()`
snapshots and let tests assert instrumentation. Nothing is exported.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("signalq.telemetry")

_LOCK = threading.Lock()
_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}
_MAX_SAMPLES = 1000


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Callers pass ids and counts, never message text.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and emit a debug log.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    with _LOCK:
        return _COUNTERS.get(name, 0)


def get_counters(prefix: str = "") -> dict[str, int]:
    """Snapshot of every counter whose name starts with `prefix`."""
    with _LOCK:
        return {k: v for k, v in _COUNTERS.items() if k.startswith(prefix)}


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time a block and keep the most recent samples for percentile stats.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        logger.debug("timing=%s seconds=%.6f", metric_name, elapsed)
        with _LOCK:
            samples = _LATENCIES.setdefault(metric_name, [])
            samples.append(elapsed)
            if len(samples) > _MAX_SAMPLES:
                del samples[: len(samples) - _MAX_SAMPLES]


def get_latency_stats(metric_name: str) -> dict[str, float]:
    """Count, min, max, avg and p95 (seconds) for a timed block."""
    with _LOCK:
        samples = sorted(_LATENCIES.get(metric_name, []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p95": 0.0}

    count = len(samples)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p95": samples[min(int(count * 0.95), count - 1)],
    }


def reset_telemetry() -> None:
    """
    Clear counters and latencies (tests).

    Side Effects:
        - Clears _COUNTERS and _LATENCIES
    """
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
