"""KV-cache aware pod scoring: block indexing, prefix token stores and KV-event ingestion."""

__version__ = "0.1.0"

__all__ = [
    "event_pool",
    "events",
    "in_memory_index",
    "index_factory",
    "indexer",
    "instrumented_index",
    "kvblock",
    "metrics",
    "prefixstore",
    "publisher",
    "redis_index",
    "scorer",
    "token_processor",
    "tokenization",
    "trie_store",
    "zmq_subscriber",
]