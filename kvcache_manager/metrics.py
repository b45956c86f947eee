"""Counters and a latency histogram describing KV-block index activity."""

from __future__ import annotations

import logging
import math
import threading
import time as _time
from bisect import bisect_left
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import timedelta
from itertools import accumulate

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)


def _full_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


class Counter:
    """A monotonically increasing, thread-safe value."""

    def __init__(self, name: str, help_text: str, namespace: str = "", subsystem: str = "") -> None:
        self.full_name = _full_name(namespace, subsystem, name)
        self.help = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        """Increase the counter by a non-negative amount."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    def __repr__(self) -> str:
        return f"Counter({self.full_name!r}, value={self.value})"


class Histogram:
    """Counts observations into cumulative upper-bound buckets."""

    def __init__(
        self,
        name: str,
        help_text: str,
        namespace: str = "",
        subsystem: str = "",
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        bounds = sorted(float(b) for b in buckets)
        if not bounds:
            raise ValueError("histogram needs at least one bucket")
        if len(set(bounds)) != len(bounds):
            raise ValueError("histogram buckets must be unique")
        self.full_name = _full_name(namespace, subsystem, name)
        self.help = help_text
        self._bounds = tuple(bounds)
        self._counts = [0] * len(bounds)
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        """Record one observation."""
        slot = bisect_left(self._bounds, value)
        with self._lock:
            if slot < len(self._counts):
                self._counts[slot] += 1
            self._count += 1
            self._sum += value

    @contextmanager
    def time(self) -> Iterator[None]:
        """Observe the seconds spent inside the ``with`` block."""
        start = _time.perf_counter()
        try:
            yield
        finally:
            self.observe(_time.perf_counter() - start)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def buckets(self) -> dict[float, int]:
        """Cumulative observation count for each upper bound."""
        with self._lock:
            return dict(zip(self._bounds, accumulate(self._counts)))

    def __repr__(self) -> str:
        return f"Histogram({self.full_name!r}, count={self.count})"


ADMISSIONS = Counter(
    "admissions_total", "Total number of KV-block admissions",
    namespace="kvcache", subsystem="index",
)
EVICTIONS = Counter(
    "evictions_total", "Total number of KV-block evictions",
    namespace="kvcache", subsystem="index",
)
LOOKUP_REQUESTS = Counter(
    "lookup_requests_total", "Total number of lookup calls",
    namespace="kvcache", subsystem="index",
)
LOOKUP_HITS = Counter(
    "lookup_hits_total", "Number of keys found in the cache on Lookup()",
    namespace="kvcache", subsystem="index",
)
LOOKUP_LATENCY = Histogram(
    "lookup_latency_seconds", "Latency of Lookup calls in seconds",
    namespace="kvcache", subsystem="index", buckets=DEFAULT_BUCKETS,
)

_registry: list[Counter | Histogram] = []
_registry_lock = threading.Lock()


def collectors() -> list[Counter | Histogram]:
    """All index metrics, in a fixed order."""
    return [ADMISSIONS, EVICTIONS, LOOKUP_REQUESTS, LOOKUP_HITS, LOOKUP_LATENCY]


def register() -> None:
    """Register the index metrics; later calls do nothing."""
    with _registry_lock:
        if not _registry:
            _registry.extend(collectors())


def is_registered() -> bool:
    with _registry_lock:
        return bool(_registry)


def snapshot() -> dict[str, float]:
    """Current values of every index metric."""
    latency_count = LOOKUP_LATENCY.count
    latency_sum = LOOKUP_LATENCY.sum
    return {
        "admissions": ADMISSIONS.value,
        "evictions": EVICTIONS.value,
        "lookups": LOOKUP_REQUESTS.value,
        "hits": LOOKUP_HITS.value,
        "latency_count": latency_count,
        "latency_sum": latency_sum,
        "latency_avg": latency_sum / latency_count if latency_count else math.nan,
    }


def log_metrics() -> dict[str, float]:
    """Log the current metric values once and return them."""
    values = snapshot()
    logger.info(
        "metrics beat %s", " ".join(f"{name}={value}" for name, value in values.items())
    )
    return values


def start_metrics_logging(
    interval: float | timedelta, stop_event: threading.Event | None = None
) -> threading.Thread:
    """Log metric values every ``interval`` in a background thread until stopped."""
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds <= 0:
        raise ValueError("non-positive interval for metrics logging")
    stop = stop_event if stop_event is not None else threading.Event()

    def _beat() -> None:
        while not stop.wait(seconds):
            log_metrics()

    thread = threading.Thread(target=_beat, name="kvcache-metrics", daemon=True)
    thread.start()
    return thread