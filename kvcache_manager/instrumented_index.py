"""An index wrapper that records admissions, evictions and lookup metrics."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from . import metrics
from .kvblock import Index, Key, LookupResult, PodEntry


class InstrumentedIndex(Index):
    """Delegates to another index and updates the index metrics."""

    def __init__(self, next_index: Index) -> None:
        self._next = next_index

    def add(self, keys: Sequence[Key], entries: Sequence[PodEntry]) -> None:
        try:
            self._next.add(keys, entries)
        finally:
            metrics.ADMISSIONS.inc(len(keys))

    def evict(self, key: Key, entries: Sequence[PodEntry]) -> None:
        try:
            self._next.evict(key, entries)
        finally:
            metrics.EVICTIONS.inc(len(entries))

    def lookup(
        self, keys: Sequence[Key], pod_identifiers: Iterable[str] | None = None
    ) -> LookupResult:
        with metrics.LOOKUP_LATENCY.time():
            metrics.LOOKUP_REQUESTS.inc()
            hit_keys, pods = self._next.lookup(keys, pod_identifiers)
            metrics.LOOKUP_HITS.inc(len(hit_keys))
            return hit_keys, pods