from unittest import mock

import pytest
import redis

from kvcache_manager.kvblock import Key, PodEntry
from kvcache_manager.redis_index import (
    RedisIndex,
    RedisIndexConfig,
    new_redis_index,
    normalize_redis_url,
)


class _FakePipeline:
    def __init__(self, client):
        self._client = client
        self._ops = []

    def hkeys(self, name):
        self._ops.append(("hkeys", name))

    def hset(self, name, field, value):
        self._ops.append(("hset", name, field, value))

    def hdel(self, name, field):
        self._ops.append(("hdel", name, field))

    def execute(self):
        if self._client.fail:
            raise redis.RedisError("boom")
        results = []
        for op in self._ops:
            if op[0] == "hkeys":
                results.append([f.encode() for f in self._client.hashes.get(op[1], {})])
            elif op[0] == "hset":
                self._client.hashes.setdefault(op[1], {})[op[2]] = op[3]
                results.append(1)
            else:
                existed = self._client.hashes.get(op[1], {}).pop(op[2], None)
                if op[1] in self._client.hashes and not self._client.hashes[op[1]]:
                    del self._client.hashes[op[1]]
                results.append(0 if existed is None else 1)
        self._ops = []
        return results


class _FakeRedis:
    def __init__(self, fail=False, ping_ok=True):
        self.hashes = {}
        self.fail = fail
        self.ping_ok = ping_ok

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    def ping(self):
        if not self.ping_ok:
            raise redis.ConnectionError("refused")
        return True


def _keys(*hashes):
    return [Key("m", h) for h in hashes]


def test_normalize_redis_url():
    assert normalize_redis_url("localhost:6379") == "redis://localhost:6379"
    assert normalize_redis_url("redis://127.0.0.1:6379") == "redis://127.0.0.1:6379"
    assert normalize_redis_url("rediss://host:1") == "rediss://host:1"
    assert normalize_redis_url("unix:///tmp/r.sock") == "unix:///tmp/r.sock"


def test_default_config_address():
    assert RedisIndexConfig().address == "redis://127.0.0.1:6379"


def test_add_stores_entry_fields():
    client = _FakeRedis()
    index = RedisIndex(client)
    index.add(_keys(1, 2), [PodEntry("10.0.0.1", "gpu")])
    assert set(client.hashes) == {"m@1", "m@2"}
    assert list(client.hashes["m@1"]) == ["10.0.0.1@gpu"]


def test_add_with_nothing_is_noop():
    client = _FakeRedis()
    index = RedisIndex(client)
    index.add([], [PodEntry("p", "gpu")])
    index.add(_keys(1), [])
    assert client.hashes == {}


def test_lookup_empty_keys():
    assert RedisIndex(_FakeRedis()).lookup([]) == ([], {})


def test_lookup_all_hits_splits_port_and_excludes_last_key():
    client = _FakeRedis()
    index = RedisIndex(client)
    keys = _keys(1, 2, 3)
    index.add(keys, [PodEntry("10.0.0.1:8000", "gpu")])
    hit, pods = index.lookup(keys)
    assert hit == keys[:2]
    assert pods == {k: ["10.0.0.1"] for k in keys}


def test_lookup_cuts_at_missing_key():
    client = _FakeRedis()
    index = RedisIndex(client)
    keys = _keys(1, 2, 3)
    index.add([keys[0], keys[2]], [PodEntry("10.0.0.1:8000", "gpu")])
    hit, pods = index.lookup(keys)
    assert hit == keys[:1]
    assert pods == {keys[0]: ["10.0.0.1"]}


def test_lookup_filter_excludes_other_pods():
    client = _FakeRedis()
    index = RedisIndex(client)
    keys = _keys(1, 2)
    index.add(keys, [PodEntry("10.0.0.1:1", "gpu"), PodEntry("10.0.0.2:1", "gpu")])
    _, pods = index.lookup(keys, {"10.0.0.2"})
    assert pods == {k: ["10.0.0.2"] for k in keys}
    hit, none = index.lookup(keys, {"10.0.0.9"})
    assert hit == []
    assert none == {}


def test_evict_removes_fields():
    client = _FakeRedis()
    index = RedisIndex(client)
    entry = PodEntry("p", "gpu")
    index.add(_keys(1), [entry, PodEntry("q", "gpu")])
    index.evict(Key("m", 1), [entry])
    assert list(client.hashes["m@1"]) == ["q@gpu"]


def test_pipeline_failures_raise():
    index = RedisIndex(_FakeRedis(fail=True))
    with pytest.raises(RuntimeError, match="pipeline execution failed"):
        index.lookup(_keys(1))
    with pytest.raises(RuntimeError, match="failed to add entries"):
        index.add(_keys(1), [PodEntry("p", "gpu")])
    with pytest.raises(RuntimeError, match="failed to evict entries"):
        index.evict(Key("m", 1), [PodEntry("p", "gpu")])


def test_new_redis_index_normalizes_and_pings():
    fake = _FakeRedis()
    with mock.patch("redis.Redis.from_url", return_value=fake) as from_url:
        config = RedisIndexConfig(address="localhost:6379")
        index = new_redis_index(config)
    from_url.assert_called_once_with("redis://localhost:6379")
    assert index.client is fake
    assert config.address == "redis://localhost:6379"


def test_new_redis_index_ping_failure():
    with mock.patch("redis.Redis.from_url", return_value=_FakeRedis(ping_ok=False)):
        with pytest.raises(ConnectionError, match="failed to connect to Redis"):
            new_redis_index(RedisIndexConfig())


def test_new_redis_index_parse_failure():
    with mock.patch("redis.Redis.from_url", side_effect=ValueError("bad port")):
        with pytest.raises(ValueError, match="failed to parse redisURL"):
            new_redis_index(RedisIndexConfig(address="redis://host:x"))