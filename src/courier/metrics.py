"""In-memory metrics for courier, exposed on /metrics.

Two kinds of numbers are kept:
    - latencies, grouped as "store" (one entry per collection.operation)
      and "requests" (one entry per normalized route)
    - delivery counters: fan-out events, receipts, push sent/pruned/transient

Everything resets with the process; there is no exporter.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# Store calls slower than this are logged and counted as slow
SLOW_STORE_MS = 100


@dataclass
class Latency:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    slow: int = 0

    def observe(self, duration_ms: float, slow: bool) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if duration_ms > self.max_ms:
            self.max_ms = duration_ms
        if slow:
            self.slow += 1

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "avg_ms": round(avg, 2),
            "max_ms": round(self.max_ms, 2),
            "slow": self.slow,
        }


@dataclass
class Metrics:
    _lock: Lock = field(default_factory=Lock)
    latencies: dict[str, dict[str, Latency]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(Latency))
    )
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    started_at: float = field(default_factory=time.time)

    def observe(self, group: str, name: str, duration_ms: float, slow: bool = False) -> None:
        with self._lock:
            self.latencies[group][name].observe(duration_ms, slow)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        self.observe("requests", endpoint, duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        """Bump a delivery counter."""
        with self._lock:
            self.counters[counter] += amount

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self.started_at, 1),
                "store_operations": _group(self.latencies.get("store")),
                "requests": _group(self.latencies.get("requests")),
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.latencies.clear()
            self.counters.clear()
            self.started_at = time.time()


def _group(latencies: dict[str, Latency] | None) -> dict[str, dict]:
    return {name: latency.to_dict() for name, latency in (latencies or {}).items()}


metrics = Metrics()


@contextmanager
def timed_store_operation(operation: str):
    """Record how long a store call took, e.g. ``"messages.create"``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        slow = duration_ms > SLOW_STORE_MS
        if slow:
            logger.warning(f"Slow store operation: {operation} took {duration_ms:.1f}ms")
        metrics.observe("store", operation, duration_ms, slow)
