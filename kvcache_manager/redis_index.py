"""A KV-block index kept in Redis hashes, one hash per block key."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

import redis

from .kvblock import Index, Key, LookupResult, PodEntry

logger = logging.getLogger(__name__)

_URL_SCHEMES = ("redis://", "rediss://", "unix://")


@dataclass
class RedisIndexConfig:
    """Where the Redis server lives."""

    address: str = "redis://127.0.0.1:6379"


def normalize_redis_url(address: str) -> str:
    """Prefix ``redis://`` to an address that carries no known scheme."""
    if address.startswith(_URL_SCHEMES):
        return address
    return "redis://" + address


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisIndex(Index):
    """Stores, for every block key, a hash whose fields are pod entries."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def lookup(
        self, keys: Sequence[Key], pod_identifiers: Iterable[str] | None = None
    ) -> LookupResult:
        keys = list(keys)
        if not keys:
            return [], {}

        wanted = set(pod_identifiers or ())
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.hkeys(str(key))
        try:
            results = pipe.execute()
        except redis.RedisError as exc:
            raise RuntimeError(f"redis pipeline execution failed: {exc}") from exc

        pods_per_key: dict[Key, list[str]] = {}
        highest_hit = 0
        for idx, (key, fields) in enumerate(zip(keys, results)):
            if isinstance(fields, Exception):
                logger.error("failed to get pods for key %s: %s", key, fields)
                return keys[:idx], pods_per_key

            filtered = [
                ip
                for ip in (_text(field).split(":", 1)[0] for field in fields or ())
                if not wanted or ip in wanted
            ]
            if not filtered:
                logger.info("no pods found for key %s, cutting search", key)
                return keys[:idx], pods_per_key

            highest_hit = idx
            pods_per_key[key] = filtered

        return keys[:highest_hit], pods_per_key

    def add(self, keys: Sequence[Key], entries: Sequence[PodEntry]) -> None:
        if not keys or not entries:
            return

        stamp = datetime.now().astimezone().isoformat(timespec="seconds")
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            redis_key = str(key)
            for entry in entries:
                pipe.hset(redis_key, str(entry), stamp)
        try:
            pipe.execute()
        except redis.RedisError as exc:
            raise RuntimeError(f"failed to add entries to Redis: {exc}") from exc

    def evict(self, key: Key, entries: Sequence[PodEntry]) -> None:
        redis_key = str(key)
        pipe = self.client.pipeline(transaction=False)
        for entry in entries:
            pipe.hdel(redis_key, str(entry))
        try:
            pipe.execute()
        except redis.RedisError as exc:
            raise RuntimeError(f"failed to evict entries from Redis: {exc}") from exc


def new_redis_index(config: RedisIndexConfig | None = None) -> RedisIndex:
    """Connect to Redis, check it answers, and return an index backed by it."""
    config = config if config is not None else RedisIndexConfig()
    config.address = normalize_redis_url(config.address)

    try:
        client = redis.Redis.from_url(config.address)
    except ValueError as exc:
        raise ValueError(f"failed to parse redisURL: {exc}") from exc

    try:
        client.ping()
    except redis.RedisError as exc:
        raise ConnectionError(f"failed to connect to Redis: {exc}") from exc

    return RedisIndex(client)