import pytest

from kvcache_manager.kvblock import Index, Key, PodEntry


def test_key_string_form():
    assert str(Key("test-model", 1001)) == "test-model@1001"


def test_pod_entry_string_form():
    assert str(PodEntry("10.0.0.1", "gpu")) == "10.0.0.1@gpu"


def test_keys_are_hashable_values():
    mapping = {Key("m", 1): "first"}
    assert mapping[Key("m", 1)] == "first"
    assert Key("m", 1) != Key("m", 2)
    assert Key("a", 1) != Key("b", 1)


def test_pod_entries_differ_by_tier():
    assert len({PodEntry("pod", "gpu"), PodEntry("pod", "cpu"), PodEntry("pod", "gpu")}) == 2


def test_key_is_immutable():
    key = Key("m", 1)
    with pytest.raises(AttributeError):
        key.chunk_hash = 2
    assert str(key) == "m@1"
    assert key == Key("m", 1)


def test_index_is_abstract():
    with pytest.raises(TypeError):
        Index()