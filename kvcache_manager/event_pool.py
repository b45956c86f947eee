"""A sharded worker pool applying KV-cache events to a KV-block index.

Events of one pod always go to the same worker, so they are applied in order.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .events import (
    AllBlocksCleared,
    BlockRemoved,
    BlockStored,
    Event,
    EventDecodeError,
    decode_event_batch,
    decode_events,
)
from .kvblock import Index, Key, PodEntry

logger = logging.getLogger(__name__)

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_SHUTDOWN = object()


def _fnv1a_32(data: bytes) -> int:
    value = _FNV32_OFFSET
    for byte in data:
        value = ((value ^ byte) * _FNV32_PRIME) & 0xFFFFFFFF
    return value


@dataclass
class EventPoolConfig:
    """Where events arrive from and how many workers apply them."""

    zmq_endpoint: str = "tcp://*:5557"
    topic_filter: str = "kv@"
    concurrency: int = 4


@dataclass(frozen=True)
class Message:
    """An event batch read from a topic, with the pod and model it came from."""

    topic: str
    payload: bytes
    seq: int
    pod_identifier: str
    model_name: str


SubscriberFactory = Callable[["EventPool", str, str], Any]


class EventPool:
    """Applies event batches to an index using one queue and worker per shard.

    ``subscriber_factory`` is called with the pool, the endpoint and the topic
    filter; the object it returns is started with the pool's stop event.
    """

    def __init__(
        self,
        index: Index,
        config: EventPoolConfig | None = None,
        subscriber_factory: SubscriberFactory | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        config = config if config is not None else EventPoolConfig()
        if config.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.config = config
        self.concurrency = config.concurrency
        self.index = index
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._queues: list[queue.Queue] = [queue.Queue() for _ in range(self.concurrency)]
        self._workers: list[threading.Thread] = []
        self._closed = False
        self._lock = threading.Lock()
        self.subscriber = (
            subscriber_factory(self, config.zmq_endpoint, config.topic_filter)
            if subscriber_factory is not None
            else None
        )

    def start(self) -> None:
        """Start the workers and the subscriber; returns immediately."""
        with self._lock:
            if self._workers:
                raise RuntimeError("event pool already started")
            logger.info("starting sharded event processing pool with %d workers", self.concurrency)
            self._workers = [
                threading.Thread(
                    target=self._worker, args=(shard,), name=f"kv-events-worker-{shard}", daemon=True
                )
                for shard in range(self.concurrency)
            ]
        for worker in self._workers:
            worker.start()
        if self.subscriber is not None:
            threading.Thread(
                target=self.subscriber.start, args=(self.stop_event,),
                name="kv-events-subscriber", daemon=True,
            ).start()

    def shutdown(self) -> None:
        """Stop accepting tasks, let the workers finish queued ones, then stop the subscriber."""
        logger.info("shutting down event processing pool")
        with self._lock:
            self._closed = True
            workers = list(self._workers)
        for shard_queue in self._queues:
            shard_queue.put(_SHUTDOWN)
        for worker in workers:
            worker.join()
        self.stop_event.set()
        logger.info("event processing pool shut down")

    def shard_for(self, pod_identifier: str) -> int:
        """The queue a pod's messages go to, chosen by FNV-1a hash."""
        return _fnv1a_32(pod_identifier.encode("utf-8")) % self.concurrency

    def add_task(self, message: Message) -> None:
        """Queue a message on its pod's shard; ignored after shutdown."""
        with self._lock:
            if self._closed:
                return
        self._queues[self.shard_for(message.pod_identifier)].put(message)

    def _worker(self, shard: int) -> None:
        shard_queue = self._queues[shard]
        while True:
            message = shard_queue.get()
            if message is _SHUTDOWN:
                return
            try:
                self.process_event(message)
            except Exception:
                logger.exception("failed to process event from topic %s", message.topic)
            if self.stop_event.is_set():
                return

    def process_event(self, message: Message) -> list[Event]:
        """Decode a message's batch and apply its events; return the events applied."""
        logger.debug("processing event from topic %s, seq %d", message.topic, message.seq)
        try:
            batch = decode_event_batch(message.payload)
        except EventDecodeError as exc:
            logger.debug("failed to decode event batch, dropping message: %s", exc)
            return []

        events = decode_events(batch)
        entries = [PodEntry(pod_identifier=message.pod_identifier, device_tier="gpu")]
        self.digest_events(message.pod_identifier, message.model_name, events, entries)
        return events

    def digest_events(
        self,
        pod_identifier: str,
        model_name: str,
        events: Sequence[Event],
        entries: Sequence[PodEntry],
    ) -> None:
        """Apply events to the index; a failing event does not stop the rest."""
        logger.debug("digesting %d events", len(events))
        for event in events:
            if isinstance(event, BlockStored):
                keys = [Key(model_name=model_name, chunk_hash=h) for h in event.block_hashes]
                try:
                    self.index.add(keys, entries)
                except (ValueError, RuntimeError, OSError) as exc:
                    logger.debug("failed to add event to index for pod %s: %s", pod_identifier, exc)
            elif isinstance(event, BlockRemoved):
                for chunk_hash in event.block_hashes:
                    key = Key(model_name=model_name, chunk_hash=chunk_hash)
                    try:
                        self.index.evict(key, entries)
                    except (ValueError, RuntimeError, OSError) as exc:
                        logger.debug(
                            "failed to remove event from index for pod %s: %s", pod_identifier, exc
                        )
            elif isinstance(event, AllBlocksCleared):
                continue
            else:
                logger.debug("unknown event for pod %s: %r", pod_identifier, event)