"""Receives KV-cache event batches over a ZMQ SUB socket and hands them to an event pool.

Messages have three frames: the topic ``kv@<pod-id>@<model-name>``, an
8-byte big-endian sequence number, and the msgpack-encoded event batch.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Protocol

import zmq

from .event_pool import Message

logger = logging.getLogger(__name__)

# How long to wait before binding again after the socket failed.
RETRY_INTERVAL = 5.0
# How often polling times out to check whether to stop, in milliseconds.
POLL_TIMEOUT_MS = 250

_SEQ_SIZE = 8


class _TaskSink(Protocol):
    def add_task(self, message: Message) -> None: ...


def parse_topic(topic: str) -> tuple[str, str]:
    """Split a ``kv@<pod-id>@<model-name>`` topic into pod identifier and model name."""
    parts = topic.split("@")
    if len(parts) != 3:
        raise ValueError(
            f"cannot extract identifiers from topic {topic!r}, "
            "expected format kv@<pod-id>@<model-name>"
        )
    return parts[1], parts[2]


class ZMQSubscriber:
    """Binds a SUB socket, subscribes to a topic filter and forwards messages to a pool."""

    def __init__(
        self,
        pool: _TaskSink,
        endpoint: str,
        topic_filter: str,
        context: zmq.Context | None = None,
        retry_interval: float = RETRY_INTERVAL,
    ) -> None:
        self.pool = pool
        self.endpoint = endpoint
        self.topic_filter = topic_filter
        self.retry_interval = retry_interval
        self._context = context if context is not None else zmq.Context.instance()

    def start(self, stop_event: threading.Event) -> None:
        """Receive messages until ``stop_event`` is set, rebinding after failures."""
        while not stop_event.is_set():
            self._run_subscriber(stop_event)
            if stop_event.wait(self.retry_interval):
                break
            logger.info("retrying zmq-subscriber")
        logger.info("shutting down zmq-subscriber")

    def _run_subscriber(self, stop_event: threading.Event) -> None:
        try:
            sub = self._context.socket(zmq.SUB)
        except zmq.ZMQError as exc:
            logger.error("failed to create subscriber socket: %s", exc)
            return

        try:
            try:
                sub.bind(self.endpoint)
            except zmq.ZMQError as exc:
                logger.error("failed to bind subscriber socket to %s: %s", self.endpoint, exc)
                return
            logger.info("bound subscriber socket to %s", self.endpoint)

            try:
                sub.setsockopt_string(zmq.SUBSCRIBE, self.topic_filter)
            except zmq.ZMQError as exc:
                logger.error("failed to subscribe to topic filter %r: %s", self.topic_filter, exc)
                return

            while not stop_event.is_set():
                try:
                    ready = sub.poll(POLL_TIMEOUT_MS, zmq.POLLIN)
                except zmq.ZMQError as exc:
                    logger.debug("failed to poll zmq subscriber on %s: %s", self.endpoint, exc)
                    break
                if not ready:
                    continue
                try:
                    parts = sub.recv_multipart()
                except zmq.ZMQError as exc:
                    logger.debug("failed to receive message on %s: %s", self.endpoint, exc)
                    break
                self.handle_parts(parts)
        finally:
            sub.close(linger=0)

    def handle_parts(self, parts: Sequence[bytes]) -> Message | None:
        """Turn the frames of one message into a ``Message`` and queue it on the pool.

        Returns the queued message, or ``None`` when the frames are malformed.
        """
        if len(parts) != 3:
            logger.debug("expected 3 message frames, got %d", len(parts))
            return None
        topic_bytes, seq_bytes, payload = (bytes(part) for part in parts)
        if len(seq_bytes) < _SEQ_SIZE:
            logger.debug("sequence frame too short: %d bytes", len(seq_bytes))
            return None
        seq = int.from_bytes(seq_bytes[:_SEQ_SIZE], "big")
        topic = topic_bytes.decode("utf-8", errors="replace")

        try:
            pod_identifier, model_name = parse_topic(topic)
        except ValueError as exc:
            logger.debug("%s", exc)
            return None

        logger.debug(
            "received message topic=%s seq=%d pod=%s model=%s payload_size=%d",
            topic, seq, pod_identifier, model_name, len(payload),
        )
        message = Message(
            topic=topic,
            payload=payload,
            seq=seq,
            pod_identifier=pod_identifier,
            model_name=model_name,
        )
        self.pool.add_task(message)
        return message