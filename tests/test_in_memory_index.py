import pytest

from kvcache_manager.in_memory_index import InMemoryIndex, InMemoryIndexConfig
from kvcache_manager.kvblock import Key, PodEntry

MODEL = "test-model"


def keys(*hashes):
    return [Key(MODEL, h) for h in hashes]


def gpu(*pods):
    return [PodEntry(pod, "gpu") for pod in pods]


def test_default_config_values():
    config = InMemoryIndexConfig()
    assert config.size == 100_000_000
    assert config.pod_cache_size == 10


def test_add_then_lookup_returns_all_pods():
    index = InMemoryIndex()
    block_keys = keys(1, 2, 3)
    index.add(block_keys, gpu("pod-a", "pod-b"))
    hit, pods = index.lookup(block_keys)
    assert hit == block_keys
    assert pods == {key: ["pod-a", "pod-b"] for key in block_keys}


def test_lookup_filters_by_pod_identifiers():
    index = InMemoryIndex()
    block_keys = keys(1, 2)
    index.add(block_keys, gpu("pod-a", "pod-b"))
    hit, pods = index.lookup(block_keys, {"pod-b"})
    assert hit == block_keys
    assert pods == {key: ["pod-b"] for key in block_keys}


def test_lookup_filter_without_matches_leaves_map_empty():
    index = InMemoryIndex()
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a"))
    hit, pods = index.lookup(block_keys, ["pod-z"])
    assert hit == block_keys
    assert pods == {}


def test_lookup_skips_missing_keys():
    index = InMemoryIndex()
    k1, k2, k3 = keys(1, 2, 3)
    index.add([k1, k3], gpu("pod-a"))
    hit, pods = index.lookup([k1, k2, k3])
    assert hit == [k1, k2, k3]
    assert set(pods) == {k1, k3}


def test_lookup_without_hits_returns_first_key():
    index = InMemoryIndex()
    block_keys = keys(7, 8)
    hit, pods = index.lookup(block_keys)
    assert hit == block_keys[:1]
    assert pods == {}


def test_lookup_requires_keys():
    with pytest.raises(ValueError):
        InMemoryIndex().lookup([])


def test_add_requires_keys_and_entries():
    index = InMemoryIndex()
    with pytest.raises(ValueError):
        index.add([], gpu("pod-a"))
    with pytest.raises(ValueError):
        index.add(keys(1), [])


def test_evict_requires_entries():
    with pytest.raises(ValueError):
        InMemoryIndex().evict(Key(MODEL, 1), [])


def test_evict_removes_one_pod():
    index = InMemoryIndex()
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a", "pod-b"))
    index.evict(block_keys[0], gpu("pod-a"))
    _, pods = index.lookup(block_keys)
    assert pods == {block_keys[0]: ["pod-b"]}


def test_evict_last_pod_removes_key():
    index = InMemoryIndex()
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a"))
    index.evict(block_keys[0], gpu("pod-a"))
    _, pods = index.lookup(block_keys)
    assert pods == {}


def test_evict_unknown_key_leaves_index_unchanged():
    index = InMemoryIndex()
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a"))
    index.evict(Key(MODEL, 99), gpu("pod-a"))
    _, pods = index.lookup(block_keys)
    assert pods == {block_keys[0]: ["pod-a"]}


def test_least_recently_used_key_is_evicted():
    index = InMemoryIndex(InMemoryIndexConfig(size=2, pod_cache_size=4))
    k1, k2, k3 = keys(1, 2, 3)
    for key in (k1, k2, k3):
        index.add([key], gpu("pod-a"))
    _, pods = index.lookup([k1, k2, k3])
    assert k1 not in pods
    assert set(pods) == {k2, k3}


def test_pod_cache_keeps_most_recent_pods():
    index = InMemoryIndex(InMemoryIndexConfig(size=10, pod_cache_size=2))
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a", "pod-b", "pod-c"))
    _, pods = index.lookup(block_keys)
    assert pods == {block_keys[0]: ["pod-b", "pod-c"]}


def test_readding_pod_refreshes_it():
    index = InMemoryIndex(InMemoryIndexConfig(size=10, pod_cache_size=2))
    block_keys = keys(1)
    index.add(block_keys, gpu("pod-a", "pod-b"))
    index.add(block_keys, gpu("pod-a"))
    index.add(block_keys, gpu("pod-c"))
    _, pods = index.lookup(block_keys)
    assert pods == {block_keys[0]: ["pod-a", "pod-c"]}


@pytest.mark.parametrize("config", [
    InMemoryIndexConfig(size=0),
    InMemoryIndexConfig(pod_cache_size=0),
])
def test_invalid_sizes_are_rejected(config):
    with pytest.raises(ValueError):
        InMemoryIndex(config)