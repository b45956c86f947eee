"""Turns token sequences into chained KV-block keys, hashed the way vLLM does."""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import cbor2

from .kvblock import Key

DEFAULT_BLOCK_SIZE = 16


@dataclass
class TokenProcessorConfig:
    """Block size and hash seed of the token processor.

    ``hash_seed`` prefixes the initial hash chain, like vLLM's NONE_HASH,
    and must match the ``PYTHONHASHSEED`` the vLLM deployments use.
    """

    block_size: int = DEFAULT_BLOCK_SIZE
    hash_seed: str = ""


def _digest_tail(payload: Any) -> int:
    """Lower 64 bits (big-endian) of the SHA-256 of the canonical CBOR encoding."""
    encoded = cbor2.dumps(payload, canonical=True)
    return int.from_bytes(hashlib.sha256(encoded).digest()[24:], "big")


class ChunkedTokenDatabase:
    """Splits tokens into full blocks and hashes each block onto its parent's hash."""

    def __init__(self, config: TokenProcessorConfig | None = None) -> None:
        config = config if config is not None else TokenProcessorConfig()
        if config.block_size <= 0:
            raise ValueError("block size must be positive")
        self.block_size = config.block_size
        self.hash_seed = config.hash_seed
        self._init_hash: int | None = None
        self._lock = threading.Lock()

    def init_hash(self) -> int:
        """The root parent hash, derived from the hash seed and computed once."""
        with self._lock:
            if self._init_hash is None:
                self._init_hash = _digest_tail(self.hash_seed)
            return self._init_hash

    def hash_block(self, parent: int, tokens: Sequence[int], extra: Any = None) -> int:
        """Hash one block of tokens chained onto ``parent``."""
        return _digest_tail([parent, list(tokens), extra])

    def chunk_tokens(self, tokens: Sequence[int]) -> list[list[int]]:
        """Split tokens into full blocks; a trailing partial block is dropped."""
        tokens = list(tokens)
        full = len(tokens) - len(tokens) % self.block_size
        return [tokens[start : start + self.block_size] for start in range(0, full, self.block_size)]

    def prefix_hashes(self, parent_hash: int, chunks: Sequence[Sequence[int]]) -> list[int]:
        """Chained hashes: each chunk is hashed onto the previous chunk's hash."""
        hashes: list[int] = []
        prefix = parent_hash
        for chunk in chunks:
            prefix = self.hash_block(prefix, chunk, None)
            hashes.append(prefix)
        return hashes

    def tokens_to_kv_block_keys(self, tokens: Sequence[int], model_name: str) -> list[Key]:
        """Convert tokens into the KV-block keys of their full blocks."""
        hashes = self.prefix_hashes(self.init_hash(), self.chunk_tokens(tokens))
        return [Key(model_name=model_name, chunk_hash=value) for value in hashes]