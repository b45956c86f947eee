"""Core types of the KV-block index: block keys, pod entries and the index interface."""

from __future__ import annotations

import abc
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

DEBUG = logging.DEBUG
TRACE = 5

logging.addLevelName(TRACE, "TRACE")


@dataclass(frozen=True)
class Key:
    """Unique identifier of a KV-cache block."""

    model_name: str
    chunk_hash: int

    def __str__(self) -> str:
        return f"{self.model_name}@{self.chunk_hash}"


@dataclass(frozen=True)
class PodEntry:
    """A pod holding a KV-block, and the device tier it is stored on."""

    pod_identifier: str
    device_tier: str

    def __str__(self) -> str:
        return f"{self.pod_identifier}@{self.device_tier}"


LookupResult = tuple[list[Key], dict[Key, list[str]]]


class Index(abc.ABC):
    """A backend that tracks which pods hold which KV-blocks.

    Implementations are safe to use from several threads at once.
    """

    @abc.abstractmethod
    def lookup(
        self, keys: Sequence[Key], pod_identifiers: Iterable[str] | None = None
    ) -> LookupResult:
        """Return the hit keys and, for each, the pods holding it.

        Pods are filtered by ``pod_identifiers``; an empty or missing
        filter admits every pod.
        """

    @abc.abstractmethod
    def add(self, keys: Sequence[Key], entries: Sequence[PodEntry]) -> None:
        """Record that every entry holds every key."""

    @abc.abstractmethod
    def evict(self, key: Key, entries: Sequence[PodEntry]) -> None:
        """Remove the given entries from a key."""