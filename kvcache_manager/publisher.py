"""Publishes KV-cache event batches to a ZMQ endpoint."""

from __future__ import annotations

import logging
import threading
from typing import Any

import msgpack
import zmq

from .events import AllBlocksCleared, BlockRemoved, BlockStored, EventBatch

logger = logging.getLogger(__name__)


def _to_wire(obj: Any) -> Any:
    if isinstance(obj, EventBatch):
        fields: list[Any] = [obj.ts, list(obj.events)]
        if obj.data_parallel_rank is not None:
            fields.append(obj.data_parallel_rank)
        return fields
    if isinstance(obj, BlockStored):
        return [
            "BlockStored",
            list(obj.block_hashes),
            obj.parent_block_hash,
            list(obj.token_ids),
            obj.block_size,
            obj.lora_id,
        ]
    if isinstance(obj, BlockRemoved):
        return ["BlockRemoved", list(obj.block_hashes)]
    if isinstance(obj, AllBlocksCleared):
        return ["AllBlocksCleared"]
    raise TypeError(f"cannot serialize object of type {type(obj).__name__}")


def encode_message(topic: str, seq: int, batch: Any) -> list[bytes]:
    """The three frames of a message: topic, big-endian sequence number, msgpack payload.

    Event batches and events are encoded as arrays, events as tagged unions.
    """
    try:
        seq_bytes = int(seq).to_bytes(8, "big")
    except OverflowError as exc:
        raise ValueError(f"sequence number {seq} does not fit in 64 bits") from exc
    try:
        payload = msgpack.packb(batch, default=_to_wire, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"failed to marshal event batch: {exc}") from exc
    return [topic.encode("utf-8"), seq_bytes, payload]


class Publisher:
    """A PUB socket connected to an endpoint, numbering the batches it sends."""

    def __init__(self, endpoint: str, context: zmq.Context | None = None) -> None:
        ctx = context if context is not None else zmq.Context.instance()
        try:
            socket = ctx.socket(zmq.PUB)
        except zmq.ZMQError as exc:
            raise ConnectionError(f"failed to create ZMQ PUB socket: {exc}") from exc
        try:
            socket.connect(endpoint)
        except zmq.ZMQError as exc:
            socket.close(linger=0)
            raise ConnectionError(f"failed to connect to {endpoint}: {exc}") from exc
        self.endpoint = endpoint
        self._socket = socket
        self._seq = 0
        self._lock = threading.Lock()

    def publish_event(self, topic: str, batch: Any) -> int:
        """Send a batch on ``topic`` (e.g. ``kv@pod1@model``); return its sequence number."""
        with self._lock:
            if self._socket.closed:
                raise RuntimeError("publisher is closed")
            self._seq += 1
            seq = self._seq
            frames = encode_message(topic, seq, batch)
            try:
                self._socket.send_multipart(frames)
            except zmq.ZMQError as exc:
                raise ConnectionError(f"failed to send message to topic {topic}: {exc}") from exc
        logger.info("published event batch topic=%s seq=%d", topic, seq)
        return seq

    def close(self) -> None:
        """Close the socket; closing again does nothing."""
        if not self._socket.closed:
            self._socket.close(linger=0)

    def __enter__(self) -> Publisher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()