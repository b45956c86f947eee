"""Ties tokenization, prefix lookup, the KV-block index and scoring together."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from .index_factory import IndexConfig, new_index
from .kvblock import TRACE, Index
from .prefixstore import LRUStoreConfig, LRUTokenStore
from .scorer import KVBlockScorerConfig, new_kv_block_scorer
from .token_processor import ChunkedTokenDatabase, TokenProcessorConfig
from .tokenization import PoolConfig, TokenizationPool, Tokenizer

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """Configuration of every component of the indexer."""

    prefix_store_config: LRUStoreConfig = field(default_factory=LRUStoreConfig)
    token_processor_config: TokenProcessorConfig = field(default_factory=TokenProcessorConfig)
    kv_block_index_config: IndexConfig = field(default_factory=IndexConfig)
    kv_block_scorer_config: KVBlockScorerConfig = field(default_factory=KVBlockScorerConfig)
    tokenizers_pool_config: PoolConfig = field(default_factory=PoolConfig)


class Indexer:
    """Scores pods by the KV-cache blocks they hold for a prompt."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        config: Config | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        config = config if config is not None else Config()
        self.config = config
        try:
            self._tokens_indexer = LRUTokenStore(config.prefix_store_config)
        except ValueError as exc:
            raise ValueError(f"failed to create prefix store: {exc}") from exc
        self._tokens_processor = ChunkedTokenDatabase(config.token_processor_config)
        self._kv_block_index = new_index(config.kv_block_index_config, stop_event)
        self._kv_block_scorer = new_kv_block_scorer(config.kv_block_scorer_config)
        self.tokenizers_pool = TokenizationPool(
            self._tokens_indexer, tokenizer, config.tokenizers_pool_config
        )

    @property
    def kv_block_index(self) -> Index:
        """The KV-block index the indexer queries."""
        return self._kv_block_index

    def run(self, stop_event: threading.Event) -> None:
        """Run the tokenization workers until ``stop_event`` is set."""
        self.tokenizers_pool.run(stop_event)

    def get_pod_scores(
        self, prompt: str, model_name: str, pod_identifiers: Iterable[str] | None = None
    ) -> dict[str, int]:
        """Map pod identifiers (addresses) to scores for a prompt.

        An empty or missing ``pod_identifiers`` treats every pod as relevant.
        The prompt is queued for tokenization, so a first request may score nothing.
        """
        self.tokenizers_pool.add_task(prompt, model_name)

        tokens = self._tokens_indexer.find_longest_contained_tokens(prompt, model_name)
        if not tokens:
            return {}

        block_keys = self._tokens_processor.tokens_to_kv_block_keys(tokens, model_name)
        logger.log(TRACE, "found tokens %s, block keys %s", tokens, block_keys)

        try:
            hit_keys, key_to_pods = self._kv_block_index.lookup(block_keys, pod_identifiers)
        except (ValueError, RuntimeError, OSError) as exc:
            raise RuntimeError(f"failed to query kvblock indexer: {exc}") from exc
        logger.log(TRACE, "found block keys %s with pods %s", hit_keys, key_to_pods)

        scores = self._kv_block_scorer.score(hit_keys, key_to_pods)
        logger.log(TRACE, "found pod scores %s", scores)
        return scores