import msgpack
import pytest

from kvcache_manager.events import (
    AllBlocksCleared,
    BlockRemoved,
    BlockStored,
    EventBatch,
    EventDecodeError,
    decode_event,
    decode_event_batch,
    decode_events,
)

STORED = ["BlockStored", [10, 11], None, [1, 2, 3, 4], 4, None]
REMOVED = ["BlockRemoved", [10]]
CLEARED = ["AllBlocksCleared"]


def test_batch_with_two_fields():
    batch = decode_event_batch(msgpack.packb([12.5, [STORED]]))
    assert batch == EventBatch(ts=12.5, events=[STORED], data_parallel_rank=None)


def test_batch_with_rank():
    batch = decode_event_batch(msgpack.packb([3.0, [REMOVED], 2]))
    assert batch.data_parallel_rank == 2
    assert batch.events == [REMOVED]


def test_batch_extra_fields_ignored():
    batch = decode_event_batch(msgpack.packb([1.0, [], 0, "extra", 7]))
    assert batch.ts == 1.0
    assert batch.events == []
    assert batch.data_parallel_rank == 0


def test_batch_integer_timestamp_becomes_float():
    batch = decode_event_batch(msgpack.packb([5, []]))
    assert batch.ts == 5.0
    assert isinstance(batch.ts, float)


def test_batch_too_short():
    with pytest.raises(EventDecodeError, match="at least 2 fields"):
        decode_event_batch(msgpack.packb([1.0]))


def test_batch_not_an_array():
    with pytest.raises(EventDecodeError):
        decode_event_batch(msgpack.packb({"ts": 1.0}))


def test_batch_garbage_bytes():
    with pytest.raises(EventDecodeError):
        decode_event_batch(b"\xc1\xc1")


def test_batch_bad_timestamp():
    with pytest.raises(EventDecodeError):
        decode_event_batch(msgpack.packb(["now", []]))


def test_decode_block_stored_from_bytes():
    event = decode_event(msgpack.packb(STORED))
    assert event == BlockStored(
        block_hashes=[10, 11], parent_block_hash=None, token_ids=[1, 2, 3, 4],
        block_size=4, lora_id=None,
    )


def test_decode_block_stored_keeps_full_uint64():
    top = 2**64 - 1
    event = decode_event(msgpack.packb(["BlockStored", [top], top, [], 16, 3]))
    assert event.block_hashes == [top]
    assert event.parent_block_hash == top
    assert event.lora_id == 3


def test_decode_block_removed():
    assert decode_event(REMOVED) == BlockRemoved(block_hashes=[10])


def test_decode_all_blocks_cleared():
    assert decode_event(CLEARED) == AllBlocksCleared()


def test_unknown_tag_gives_none():
    assert decode_event(["SomethingElse", 1, 2]) is None


def test_empty_union_rejected():
    with pytest.raises(EventDecodeError, match="no tag"):
        decode_event([])


def test_wrong_field_count_rejected():
    with pytest.raises(EventDecodeError):
        decode_event(["BlockRemoved", [1], "extra"])


def test_non_string_tag_rejected():
    with pytest.raises(EventDecodeError):
        decode_event([7, [1]])


def test_negative_hash_rejected():
    with pytest.raises(EventDecodeError):
        decode_event(["BlockRemoved", [-1]])


def test_decode_events_skips_bad_and_unknown():
    batch = EventBatch(ts=0.0, events=[STORED, [], ["Nope"], REMOVED, ["BlockRemoved"], CLEARED])
    events = decode_events(batch)
    assert [type(event) for event in events] == [BlockStored, BlockRemoved, AllBlocksCleared]


def test_round_trip_through_batch():
    payload = msgpack.packb([9.0, [STORED, REMOVED], 1])
    events = decode_events(decode_event_batch(payload))
    assert events[0].block_hashes == [10, 11]
    assert events[1].block_hashes == [10]