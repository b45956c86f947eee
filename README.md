# kvcache-manager

A library for KV-cache aware request routing across a fleet of LLM
inference pods. It keeps an index of which pods hold which KV-cache
blocks. It turns prompts into block keys hashed the same way the
serving engine hashes them. It then scores candidate pods by how long a
prefix of the prompt each one already has cached.

## Modules

| Module | Purpose |
| --- | --- |
| `kvcache_manager.kvblock` | `Key`, `PodEntry` and the abstract `Index` (`lookup`, `add`, `evict`). |
| `kvcache_manager.in_memory_index` | `InMemoryIndex` and `InMemoryIndexConfig`. The index is LRU-bounded, and each key keeps an LRU-bounded set of pods. |
| `kvcache_manager.redis_index` | `RedisIndex`, which stores one Redis hash per block key. `new_redis_index` connects and pings the server. `normalize_redis_url` adds a scheme where one is missing. |
| `kvcache_manager.instrumented_index` | `InstrumentedIndex`, which wraps any index and updates the metrics below. |
| `kvcache_manager.metrics` | The `Counter` and `Histogram` classes, the index metrics, `register`, `snapshot`, `log_metrics` and `start_metrics_logging`. |
| `kvcache_manager.index_factory` | `IndexConfig` and `new_index`, which picks the backend and can wrap it with metrics. |
| `kvcache_manager.token_processor` | `ChunkedTokenDatabase`, which splits token ids into full blocks. It chains SHA-256 over canonical CBOR into 64-bit block hashes. |
| `kvcache_manager.prefixstore` | The abstract `TokenStore`, `LRUTokenStore`, `LRUStoreConfig`, `Block` and `xxh64`. |
| `kvcache_manager.trie_store` | `ContainedTokenStore`, a per-model character trie that records the last fully contained token at each position. |
| `kvcache_manager.tokenization` | The abstract `Tokenizer`, `CachedTokenizer`, `TokenizerConfig`, `TokenizationPool`, `PoolConfig` and `Task`. |
| `kvcache_manager.scorer` | `KVScoringStrategy`, `KVBlockScorerConfig`, `LongestPrefixScorer` and `new_kv_block_scorer`. |
| `kvcache_manager.indexer` | `Config` and `Indexer`, the full path from a prompt to per-pod scores. |
| `kvcache_manager.events` | `EventBatch`, `BlockStored`, `BlockRemoved`, `AllBlocksCleared`, `EventDecodeError`, `decode_event_batch`, `decode_event` and `decode_events`. |
| `kvcache_manager.event_pool` | `EventPool`, `EventPoolConfig` and `Message`. The pool applies events to an index on sharded worker threads. |
| `kvcache_manager.zmq_subscriber` | `ZMQSubscriber` and `parse_topic`. |
| `kvcache_manager.publisher` | `Publisher` and `encode_message`. They send event batches in the same wire format. |

## Scoring with an index

```python
from kvcache_manager.kvblock import PodEntry
from kvcache_manager.in_memory_index import InMemoryIndex, InMemoryIndexConfig
from kvcache_manager.token_processor import ChunkedTokenDatabase, TokenProcessorConfig
from kvcache_manager.scorer import LongestPrefixScorer

processor = ChunkedTokenDatabase(TokenProcessorConfig(block_size=4))
keys = processor.tokens_to_kv_block_keys([101, 2054, 2003, 1996, 3007, 1997, 2605, 102], "my-model")

index = InMemoryIndex(InMemoryIndexConfig())
index.add(keys, [PodEntry("10.0.0.1", "gpu")])

hit_keys, pods_per_key = index.lookup(keys, set())
scores = LongestPrefixScorer().score(hit_keys, pods_per_key)
# {"10.0.0.1": 2}
```

The second argument of `lookup` filters the pods:

* An empty or missing set of pod identifiers admits every pod.
* A non-empty set limits the result to those pods.

`LongestPrefixScorer` gives each pod that holds the first block a score
equal to the number of consecutive blocks, starting from the first,
that it holds. A pod that does not hold the first block gets no score.

## The full pipeline: `Indexer`

`Indexer(tokenizer, config=None, stop_event=None)` builds these parts
from a `Config`:

* an `LRUTokenStore`;
* a `ChunkedTokenDatabase`;
* an index from `new_index`;
* a scorer;
* a `TokenizationPool`.

`get_pod_scores(prompt, model_name, pod_identifiers=None)` works in
four steps:

1. It queues the prompt on the tokenization pool.
2. It looks up the tokens already stored for the prompt's longest known
   prefix. If there are none, it returns `{}`.
3. It turns those tokens into block keys and looks the keys up in the
   index.
4. It scores the pods holding the hit keys.

The first request for a new prompt therefore returns no scores. Once
the pool has tokenized the prompt, later requests that share its prefix
are scored.

The pool processes tasks in either of two ways:

* `Indexer.run(stop_event)` runs the pool's worker threads until the
  event is set.
* `indexer.tokenizers_pool.drain()` processes every queued task in the
  calling thread.

A task that fails is retried with an exponential delay. The delay
starts at 5 ms and is capped at 1000 s.

### Tokenizers are supplied by the caller

The package does not load tokenizer models itself. `CachedTokenizer`
takes a loader with the signature `loader(model_name, TokenizerConfig)`.
The loader returns a function that maps text to `(token_ids, offsets)`,
where each offset is a `(start, end)` pair of byte positions.
`CachedTokenizer` keeps the 20 most recently used of these functions.
`TokenizerConfig` carries `hugging_face_token` and
`tokenizers_cache_dir` for the loader to use.

## Aligning block hashes with the serving engine

Block keys only match what the engines report if both sides agree on
two settings:

* `TokenProcessorConfig.block_size` must equal the engine's KV block
  size. The default is 16.
* `TokenProcessorConfig.hash_seed` must equal the seed the engines use
  for their initial block hash. The default is `""`.

Only whole blocks are hashed. A trailing partial block is dropped.

## Prefix token stores

`LRUTokenStore` splits the UTF-8 prompt into fixed-size byte chunks.
Each chunk's xxHash64 is chained onto the hash of the chunk before it.
A chunk's block holds the tokens whose end offset falls within that
chunk. Each model gets its own LRU cache of blocks.

`find_longest_contained_tokens` returns the tokens of consecutive
matching chunks. It stops at the first chunk it does not find.

`ContainedTokenStore` provides the same interface using a character
trie.

## Ingesting KV events

Engines publish events over ZeroMQ. Each message has three frames:

* the topic `kv@<pod-id>@<model-name>`;
* an 8-byte big-endian sequence number;
* a msgpack payload.

The payload is an array, either `[timestamp, events]` or
`[timestamp, events, data_parallel_rank]`. Each event is a tagged array
whose first element is its type name.

```python
import threading
from kvcache_manager.event_pool import EventPool, EventPoolConfig
from kvcache_manager.in_memory_index import InMemoryIndex
from kvcache_manager.zmq_subscriber import ZMQSubscriber

pool = EventPool(InMemoryIndex(), EventPoolConfig(), subscriber_factory=ZMQSubscriber)
pool.start()      # workers plus a subscriber bound to tcp://*:5557, filter "kv@"
...
pool.shutdown()   # finishes queued messages, then stops the subscriber
```

Without a `subscriber_factory`, no socket is opened. Messages can then
be queued directly with `pool.add_task(Message(...))`, or applied at
once with `pool.process_event(message)`.

Messages go to workers by an FNV-1a hash of the pod identifier. All of
one pod's events therefore go to the same worker and are applied in
order:

* `BlockStored` adds its block keys for that pod on the `gpu` tier.
* `BlockRemoved` evicts its block keys for that pod.
* `AllBlocksCleared` is accepted and ignored.

Malformed batches and unknown or malformed events are logged and
dropped.

If the subscriber cannot bind, or its socket fails, it tries again
after 5 seconds. `Publisher(endpoint)` connects a PUB socket. Its
`publish_event(topic, batch)` numbers each batch from 1 and returns the
number.

## Defaults

| Setting | Default |
| --- | --- |
| In-memory index | 100,000,000 keys, 10 pods per key |
| Redis address | `redis://127.0.0.1:6379` (an address with no `redis://`, `rediss://` or `unix://` scheme gets `redis://`) |
| Token processor | block size 16, hash seed `""` |
| Prefix store | 256-byte chunks, 500,000 blocks per model |
| Tokenization pool | 5 workers, 20 cached tokenizers |
| Scoring strategy | `LongestPrefix` |
| Event pool | `tcp://*:5557`, topic filter `kv@`, 4 workers |

## Metrics

`new_index` wraps the index in `InstrumentedIndex` when
`IndexConfig.enable_metrics` is set. The wrapper updates these metrics:

| Metric | Updated by |
| --- | --- |
| `kvcache_index_admissions_total` | the number of keys added |
| `kvcache_index_evictions_total` | the number of entries evicted |
| `kvcache_index_lookup_requests_total` | each lookup |
| `kvcache_index_lookup_hits_total` | the number of hit keys |
| `kvcache_index_lookup_latency_seconds` | the duration of each lookup |

A positive `metrics_logging_interval` also starts a background thread.
The thread logs `snapshot()` at that interval until the stop event is
set.

The metrics live in the process only. The package does not export them
over HTTP or to any monitoring system.

## What is not included

The package is a library only:

* It has no command-line program.
* It does not run a network service for scoring requests.
* It does not load tokenizer models.
* It ships no scheduler plug-in.

Callers embed `Indexer` or the individual parts in their own service.