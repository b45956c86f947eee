import threading
from unittest import mock

import pytest
import redis

from kvcache_manager import metrics
from kvcache_manager.in_memory_index import InMemoryIndex, InMemoryIndexConfig
from kvcache_manager.index_factory import IndexConfig, new_index
from kvcache_manager.instrumented_index import InstrumentedIndex
from kvcache_manager.kvblock import Key, PodEntry
from kvcache_manager.redis_index import RedisIndex, RedisIndexConfig


class _PingingRedis:
    def ping(self):
        return True


class _DeadRedis:
    def ping(self):
        raise redis.ConnectionError("refused")


def test_default_config():
    config = IndexConfig()
    assert isinstance(config.in_memory_config, InMemoryIndexConfig)
    assert config.redis_config is None
    assert config.enable_metrics is False


def test_default_builds_in_memory_index():
    index = new_index()
    assert isinstance(index, InMemoryIndex)
    key = Key("m", 1)
    index.add([key], [PodEntry("p", "gpu")])
    assert index.lookup([key]) == ([key], {key: ["p"]})


def test_no_backend_raises():
    with pytest.raises(ValueError, match="no valid index configuration"):
        new_index(IndexConfig(in_memory_config=None, redis_config=None))


def test_in_memory_takes_precedence_over_redis():
    with mock.patch("redis.Redis.from_url", return_value=_DeadRedis()):
        index = new_index(IndexConfig(redis_config=RedisIndexConfig()))
    assert isinstance(index, InMemoryIndex)
    key = Key("m", 7)
    index.add([key], [PodEntry("pod-a", "gpu")])
    assert index.lookup([key]) == ([key], {key: ["pod-a"]})


def test_redis_backend_selected():
    client = _PingingRedis()
    with mock.patch("redis.Redis.from_url", return_value=client):
        index = new_index(IndexConfig(in_memory_config=None, redis_config=RedisIndexConfig()))
    assert isinstance(index, RedisIndex)
    assert index.client is client


def test_redis_backend_connection_failure():
    with mock.patch("redis.Redis.from_url", return_value=_DeadRedis()):
        with pytest.raises(ConnectionError):
            new_index(IndexConfig(in_memory_config=None, redis_config=RedisIndexConfig()))


def test_invalid_in_memory_config():
    with pytest.raises(ValueError, match="failed to create in-memory index"):
        new_index(IndexConfig(in_memory_config=InMemoryIndexConfig(size=0)))


def test_metrics_wrap_and_register():
    index = new_index(IndexConfig(enable_metrics=True))
    assert isinstance(index, InstrumentedIndex)
    assert metrics.is_registered()
    before = metrics.ADMISSIONS.value
    index.add([Key("m", 1), Key("m", 2)], [PodEntry("p", "gpu")])
    assert metrics.ADMISSIONS.value == before + 2


def test_metrics_logging_thread_started_and_stopped():
    stop = threading.Event()
    index = new_index(IndexConfig(enable_metrics=True, metrics_logging_interval=30.0), stop)
    key = Key("m", 3)
    index.add([key], [PodEntry("p", "gpu")])
    assert index.lookup([key]) == ([key], {key: ["p"]})
    beats = [t for t in threading.enumerate() if t.name == "kvcache-metrics" and t.is_alive()]
    assert beats
    stop.set()
    for thread in beats:
        thread.join(timeout=2)
    assert not any(t.is_alive() for t in beats)


def test_no_logging_without_metrics():
    before = {t.ident for t in threading.enumerate() if t.name == "kvcache-metrics"}
    index = new_index(IndexConfig(enable_metrics=False, metrics_logging_interval=5.0))
    after = {t.ident for t in threading.enumerate() if t.name == "kvcache-metrics"}
    assert after <= before
    requests_before = metrics.LOOKUP_REQUESTS.value
    key = Key("m", 4)
    index.add([key], [PodEntry("p", "gpu")])
    assert index.lookup([key]) == ([key], {key: ["p"]})
    assert metrics.LOOKUP_REQUESTS.value == requests_before