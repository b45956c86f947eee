"""KV-cache events published by inference engines, and their msgpack decoding.

Events keep the index of which pods hold which KV-blocks up to date. A batch
is the array ``[ts, events, data_parallel_rank?]``. Each event is a tagged
union: an array whose first element names the event type and whose remaining
elements are the event's fields, in order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Union

import msgpack

logger = logging.getLogger(__name__)

_UINT64_MAX = 2**64 - 1
_UINT32_MAX = 2**32 - 1


class EventDecodeError(ValueError):
    """A payload could not be decoded into an event batch or an event."""


@dataclass
class EventBatch:
    """A timestamped batch of still-encoded tagged-union events."""

    ts: float
    events: list[Any] = field(default_factory=list)
    data_parallel_rank: int | None = None


@dataclass
class BlockStored:
    """Blocks that a pod has stored."""

    block_hashes: list[int] = field(default_factory=list)
    parent_block_hash: int | None = None
    token_ids: list[int] = field(default_factory=list)
    block_size: int = 0
    lora_id: int | None = None


@dataclass
class BlockRemoved:
    """Blocks that a pod has removed."""

    block_hashes: list[int] = field(default_factory=list)


@dataclass
class AllBlocksCleared:
    """A pod has cleared all of its blocks."""


Event = Union[BlockStored, BlockRemoved, AllBlocksCleared]

_FIELD_COUNTS = {"BlockStored": 5, "BlockRemoved": 1, "AllBlocksCleared": 0}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _unpack(data: bytes) -> Any:
    try:
        return msgpack.unpackb(bytes(data), raw=False, strict_map_key=False)
    except (ValueError, TypeError, msgpack.UnpackException) as exc:
        raise EventDecodeError(f"invalid msgpack data: {exc}") from exc


def _int(value: Any, what: str, maximum: int | None = None, nullable: bool = False) -> int | None:
    if value is None:
        return None if nullable else 0
    if not _is_int(value):
        raise EventDecodeError(f"{what}: expected an integer, got {type(value).__name__}")
    if maximum is not None and not 0 <= value <= maximum:
        raise EventDecodeError(f"{what}: value {value} out of range")
    return value


def _int_list(value: Any, what: str, maximum: int) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise EventDecodeError(f"{what}: expected an array, got {type(value).__name__}")
    return [_int(item, what, maximum) for item in value]


def decode_event_batch(payload: bytes) -> EventBatch:
    """Decode a 2- or 3-element array-encoded batch; further elements are ignored."""
    data = _unpack(payload)
    if not isinstance(data, (list, tuple)):
        raise EventDecodeError(f"EventBatch: expected an array, got {type(data).__name__}")
    if len(data) < 2:
        raise EventDecodeError(f"EventBatch: expected at least 2 fields, got {len(data)}")

    ts, events = data[0], data[1]
    if not isinstance(ts, (int, float)) or isinstance(ts, bool):
        raise EventDecodeError(f"EventBatch: invalid timestamp of type {type(ts).__name__}")
    if events is None:
        events = []
    elif not isinstance(events, (list, tuple)):
        raise EventDecodeError(f"EventBatch: expected an array of events, got {type(events).__name__}")

    rank = _int(data[2], "EventBatch rank", nullable=True) if len(data) > 2 else None
    return EventBatch(ts=float(ts), events=list(events), data_parallel_rank=rank)


def decode_event(raw: Any) -> Event | None:
    """Decode one tagged-union event, given encoded or already unpacked.

    Returns ``None`` for an event of an unknown type.
    """
    union = _unpack(raw) if isinstance(raw, (bytes, bytearray, memoryview)) else raw
    if not isinstance(union, (list, tuple)):
        raise EventDecodeError(f"tagged union: expected an array, got {type(union).__name__}")
    if not union:
        raise EventDecodeError("malformed tagged union: no tag element")

    tag, fields = union[0], list(union[1:])
    if isinstance(tag, (bytes, bytearray)):
        try:
            tag = bytes(tag).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EventDecodeError(f"invalid tag: {exc}") from exc
    if not isinstance(tag, str):
        raise EventDecodeError(f"tag: expected a string, got {type(tag).__name__}")

    expected = _FIELD_COUNTS.get(tag)
    if expected is None:
        return None
    if len(fields) != expected:
        raise EventDecodeError(f"{tag}: expected {expected} fields, got {len(fields)}")

    if tag == "BlockStored":
        hashes, parent, token_ids, block_size, lora_id = fields
        return BlockStored(
            block_hashes=_int_list(hashes, "BlockStored hashes", _UINT64_MAX),
            parent_block_hash=_int(parent, "BlockStored parent", _UINT64_MAX, nullable=True),
            token_ids=_int_list(token_ids, "BlockStored token ids", _UINT32_MAX),
            block_size=_int(block_size, "BlockStored block size"),
            lora_id=_int(lora_id, "BlockStored lora id", nullable=True),
        )
    if tag == "BlockRemoved":
        return BlockRemoved(block_hashes=_int_list(fields[0], "BlockRemoved hashes", _UINT64_MAX))
    return AllBlocksCleared()


def decode_events(batch: EventBatch | Sequence[Any]) -> list[Event]:
    """Decode every event of a batch, skipping malformed and unknown ones."""
    raw_events = batch.events if isinstance(batch, EventBatch) else batch
    decoded: list[Event] = []
    for raw in raw_events:
        try:
            event = decode_event(raw)
        except EventDecodeError as exc:
            logger.debug("skipping undecodable event: %s", exc)
            continue
        if event is None:
            logger.debug("skipping event with unknown tag")
            continue
        decoded.append(event)
    return decoded