"""Builds a KV-block index from configuration."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import timedelta

from . import metrics
from .in_memory_index import InMemoryIndex, InMemoryIndexConfig
from .instrumented_index import InstrumentedIndex
from .kvblock import Index
from .redis_index import RedisIndexConfig, new_redis_index


@dataclass
class IndexConfig:
    """Backend choice and metrics settings of the KV-block index.

    When several backends are configured, the first one (in-memory, then
    Redis) is used. A zero ``metrics_logging_interval`` disables periodic
    metrics logging, which also requires ``enable_metrics``.
    """

    in_memory_config: InMemoryIndexConfig | None = field(default_factory=InMemoryIndexConfig)
    redis_config: RedisIndexConfig | None = None
    enable_metrics: bool = False
    metrics_logging_interval: float | timedelta = 0.0


def _seconds(interval: float | timedelta) -> float:
    return interval.total_seconds() if isinstance(interval, timedelta) else float(interval)


def new_index(
    config: IndexConfig | None = None, stop_event: threading.Event | None = None
) -> Index:
    """Create the configured index, wrapped with metrics when enabled."""
    config = config if config is not None else IndexConfig()

    index: Index
    if config.in_memory_config is not None:
        try:
            index = InMemoryIndex(config.in_memory_config)
        except ValueError as exc:
            raise ValueError(f"failed to create in-memory index: {exc}") from exc
    elif config.redis_config is not None:
        index = new_redis_index(config.redis_config)
    else:
        raise ValueError("no valid index configuration provided")

    if config.enable_metrics:
        index = InstrumentedIndex(index)
        metrics.register()
        if _seconds(config.metrics_logging_interval) > 0:
            metrics.start_metrics_logging(config.metrics_logging_interval, stop_event)

    return index