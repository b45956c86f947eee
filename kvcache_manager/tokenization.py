"""Per-model cached tokenizers, and a worker pool that feeds tokenizations to a prefix store."""

from __future__ import annotations

import abc
import logging
import threading
from collections import deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from pathlib import Path

from cachetools import LRUCache

from .prefixstore import Offset, TokenStore

logger = logging.getLogger(__name__)

# One tokenizer per base model (not per LoRA).
TOKENIZERS_CACHE_SIZE = 20
DEFAULT_WORKERS = 5

_BASE_RETRY_DELAY = 0.005
_MAX_RETRY_DELAY = 1000.0

Encoding = tuple[list[int], list[Offset]]
EncodeFn = Callable[[str], Encoding]


def _default_cache_dir() -> str:
    return str(Path(__file__).resolve().parent.parent / "bin")


@dataclass
class TokenizerConfig:
    """Credentials and cache location used when loading tokenizers."""

    hugging_face_token: str = ""
    tokenizers_cache_dir: str = field(default_factory=_default_cache_dir)


TokenizerLoader = Callable[[str, TokenizerConfig], EncodeFn]


class Tokenizer(abc.ABC):
    """Turns text into token ids and their byte offsets."""

    @abc.abstractmethod
    def encode(self, text: str, model_name: str) -> Encoding:
        """Token ids of ``text`` and the ``(start, end)`` offset of each."""


class CachedTokenizer(Tokenizer):
    """Loads one tokenizer per model through ``loader`` and keeps the most recent in an LRU cache."""

    def __init__(self, loader: TokenizerLoader, config: TokenizerConfig | None = None) -> None:
        self.config = config if config is not None else TokenizerConfig()
        self._loader = loader
        self._cache: LRUCache = LRUCache(maxsize=TOKENIZERS_CACHE_SIZE)
        self._lock = threading.Lock()

    def encode(self, text: str, model_name: str) -> Encoding:
        with self._lock:
            encode_fn = self._cache.get(model_name)
        if encode_fn is None:
            encode_fn = self._loader(model_name, self.config)
            with self._lock:
                self._cache[model_name] = encode_fn
        ids, offsets = encode_fn(text)
        return list(ids), [(int(low), int(high)) for low, high in offsets]


@dataclass
class PoolConfig:
    """Worker count of the tokenization pool and settings of its tokenizer."""

    workers_count: int = DEFAULT_WORKERS
    tokenizer: TokenizerConfig = field(default_factory=TokenizerConfig)


@dataclass(frozen=True)
class Task:
    """A prompt waiting to be tokenized for a model."""

    prompt: str
    model_name: str


class _WorkQueue:
    """De-duplicating work queue with per-item exponential retry delays."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def _take(self) -> Hashable:
        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def get(self) -> tuple[Hashable | None, bool]:
        """Block for the next item; the flag is true once shut down and empty."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            return self._take(), False

    def get_nowait(self) -> Hashable | None:
        with self._cond:
            return self._take() if self._queue else None

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def add_rate_limited(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            attempts = self._failures.get(item, 0)
            self._failures[item] = attempts + 1
            delay = min(_BASE_RETRY_DELAY * 2 ** min(attempts, 40), _MAX_RETRY_DELAY)
            timer = threading.Timer(delay, self._fire, (item,))
            timer.daemon = True
            self._timers.add(timer)
            timer.start()

    def _fire(self, item: Hashable) -> None:
        with self._cond:
            self._timers = {timer for timer in self._timers if timer.is_alive()}
        self.add(item)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers, self._timers = self._timers, set()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class TokenizationPool:
    """Tokenizes queued prompts in worker threads and records the results in a token store."""

    def __init__(
        self, store: TokenStore, tokenizer: Tokenizer, config: PoolConfig | None = None
    ) -> None:
        config = config if config is not None else PoolConfig()
        self.workers = config.workers_count
        self._store = store
        self._tokenizer = tokenizer
        self._queue = _WorkQueue()

    def add_task(self, prompt: str, model_name: str) -> None:
        """Queue a prompt for tokenization; it is processed later."""
        self._queue.add(Task(prompt=prompt, model_name=model_name))

    def process_task(self, task: Task) -> None:
        """Tokenize the task's prompt and store the tokenization."""
        try:
            tokens, offsets = self._tokenizer.encode(task.prompt, task.model_name)
        except Exception:
            logger.exception(
                "failed to encode prompt %r for model %s", task.prompt, task.model_name
            )
            raise
        try:
            self._store.add_tokenization(task.model_name, task.prompt, tokens, offsets)
        except Exception as exc:
            raise RuntimeError(f"tokenization failed for model {task.model_name}: {exc}") from exc

    def _handle(self, task: Task) -> None:
        try:
            self.process_task(task)
        except Exception:
            logger.debug("task for model %s failed, retrying later", task.model_name)
            self._queue.add_rate_limited(task)
        else:
            self._queue.forget(task)
        finally:
            self._queue.done(task)

    def _worker_loop(self) -> None:
        while True:
            task, shutdown = self._queue.get()
            if shutdown:
                return
            self._handle(task)

    def run(self, stop_event: threading.Event) -> None:
        """Run the workers until ``stop_event`` is set, then shut the queue down and wait for them."""
        threads = [
            threading.Thread(target=self._worker_loop, name=f"tokenizer-worker-{n}", daemon=True)
            for n in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        stop_event.wait()
        self._queue.shutdown()
        for thread in threads:
            thread.join()

    def drain(self) -> int:
        """Process every queued task in the calling thread; return how many were handled."""
        handled = 0
        while (task := self._queue.get_nowait()) is not None:
            self._handle(task)
            handled += 1
        return handled