"""An in-memory KV-block index with LRU eviction of keys and of pods per key."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass

from cachetools import LRUCache

from .kvblock import TRACE, Index, Key, LookupResult, PodEntry

logger = logging.getLogger(__name__)

DEFAULT_IN_MEMORY_INDEX_SIZE = 100_000_000
DEFAULT_PODS_PER_KEY = 10


@dataclass
class InMemoryIndexConfig:
    """Capacity limits of the in-memory index."""

    size: int = DEFAULT_IN_MEMORY_INDEX_SIZE
    pod_cache_size: int = DEFAULT_PODS_PER_KEY


class _PodCache:
    """Bounded LRU set of pod entries, iterated oldest first."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._entries: OrderedDict[PodEntry, None] = OrderedDict()

    def add(self, entry: PodEntry) -> None:
        if entry in self._entries:
            self._entries.move_to_end(entry)
            return
        self._entries[entry] = None
        if len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def remove(self, entry: PodEntry) -> None:
        self._entries.pop(entry, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PodEntry]:
        return iter(list(self._entries))


def _format_pods_per_key(pods_per_key: Mapping[Key, list[str]]) -> str:
    return "".join(f"{key}: {pods}\n" for key, pods in pods_per_key.items())


class InMemoryIndex(Index):
    """Keeps the key-to-pods mapping in process memory."""

    def __init__(self, config: InMemoryIndexConfig | None = None) -> None:
        config = config if config is not None else InMemoryIndexConfig()
        if config.size <= 0:
            raise ValueError("failed to initialize in-memory index: size must be positive")
        if config.pod_cache_size <= 0:
            raise ValueError("failed to initialize in-memory index: pod cache size must be positive")
        self._data: LRUCache = LRUCache(maxsize=config.size)
        self._pod_cache_size = config.pod_cache_size
        self._lock = threading.Lock()

    def lookup(
        self, keys: Sequence[Key], pod_identifiers: Iterable[str] | None = None
    ) -> LookupResult:
        keys = list(keys)
        if not keys:
            raise ValueError("no keys provided for lookup")

        wanted = set(pod_identifiers or ())
        pods_per_key: dict[Key, list[str]] = {}
        highest_hit = 0

        with self._lock:
            for idx, key in enumerate(keys):
                pods = self._data.get(key)
                if pods is None:
                    logger.log(TRACE, "key not found in index: %s", key)
                    continue
                if not pods:
                    logger.log(TRACE, "no pods found for key %s, cutting search", key)
                    return keys[:idx], pods_per_key

                highest_hit = idx
                matched = [
                    entry.pod_identifier
                    for entry in pods
                    if not wanted or entry.pod_identifier in wanted
                ]
                if matched:
                    pods_per_key.setdefault(key, []).extend(matched)

        if logger.isEnabledFor(TRACE):
            logger.log(
                TRACE, "lookup completed, highest hit index %d:\n%s",
                highest_hit, _format_pods_per_key(pods_per_key),
            )
        return keys[: highest_hit + 1], pods_per_key

    def add(self, keys: Sequence[Key], entries: Sequence[PodEntry]) -> None:
        if not keys or not entries:
            raise ValueError("no keys or entries provided for adding to index")

        with self._lock:
            for key in keys:
                pod_cache = self._data.get(key)
                if pod_cache is None:
                    pod_cache = _PodCache(self._pod_cache_size)
                    self._data[key] = pod_cache
                for entry in entries:
                    pod_cache.add(entry)
                logger.log(TRACE, "added pods to key %s: %s", key, list(entries))

    def evict(self, key: Key, entries: Sequence[PodEntry]) -> None:
        if not entries:
            raise ValueError("no entries provided for eviction from index")

        with self._lock:
            pod_cache = self._data.get(key)
            if pod_cache is None:
                logger.log(TRACE, "key not found in index, nothing to evict: %s", key)
                return
            for entry in entries:
                pod_cache.remove(entry)
            logger.log(TRACE, "evicted pods from key %s: %s", key, list(entries))
            if not pod_cache:
                del self._data[key]
                logger.log(TRACE, "evicted key from index as no pods remain: %s", key)