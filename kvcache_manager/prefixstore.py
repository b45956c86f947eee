"""Prompt-prefix stores that remember tokenizations, and an LRU-backed store."""

from __future__ import annotations

import abc
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field

from cachetools import LRUCache

DEFAULT_BLOCK_SIZE = 256
DEFAULT_MAX_CACHE_SIZE = 500_000

Offset = tuple[int, int]

_MASK64 = 0xFFFFFFFFFFFFFFFF
_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2AE63
_P5 = 0x27D4EB2F165667C5


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK64


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK64
    return (_rotl(acc, 31) * _P1) & _MASK64


def _merge_round(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK64


def xxh64(data: bytes, seed: int = 0) -> int:
    """The 64-bit xxHash of ``data``."""
    data = bytes(data)
    length = len(data)
    pos = 0

    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK64
        v2 = (seed + _P2) & _MASK64
        v3 = seed & _MASK64
        v4 = (seed - _P1) & _MASK64
        limit = length - 32
        while pos <= limit:
            v1 = _round(v1, int.from_bytes(data[pos : pos + 8], "little"))
            v2 = _round(v2, int.from_bytes(data[pos + 8 : pos + 16], "little"))
            v3 = _round(v3, int.from_bytes(data[pos + 16 : pos + 24], "little"))
            v4 = _round(v4, int.from_bytes(data[pos + 24 : pos + 32], "little"))
            pos += 32
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK64
        for lane in (v1, v2, v3, v4):
            h = _merge_round(h, lane)
    else:
        h = (seed + _P5) & _MASK64

    h = (h + length) & _MASK64

    while pos + 8 <= length:
        h ^= _round(0, int.from_bytes(data[pos : pos + 8], "little"))
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK64
        pos += 8
    if pos + 4 <= length:
        h ^= (int.from_bytes(data[pos : pos + 4], "little") * _P1) & _MASK64
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK64
        pos += 4
    for byte in data[pos:]:
        h ^= (byte * _P5) & _MASK64
        h = (_rotl(h, 11) * _P1) & _MASK64

    h ^= h >> 33
    h = (h * _P2) & _MASK64
    h ^= h >> 29
    h = (h * _P3) & _MASK64
    h ^= h >> 32
    return h


class TokenStore(abc.ABC):
    """Remembers tokenizations and finds the tokens of a prompt's longest known prefix."""

    @abc.abstractmethod
    def add_tokenization(
        self,
        model_name: str,
        prompt: str,
        tokens: Sequence[int],
        offsets: Sequence[Offset],
    ) -> None:
        """Store the full tokenization of ``prompt`` for ``model_name``.

        ``tokens`` and ``offsets`` are expected to be of the same length.
        """

    @abc.abstractmethod
    def find_longest_contained_tokens(self, prompt: str, model_name: str) -> list[int]:
        """Tokens contained in the longest stored prefix of ``prompt``."""


@dataclass
class LRUStoreConfig:
    """Capacity (blocks per model) and block size (bytes of prompt) of the LRU store."""

    cache_size: int = DEFAULT_MAX_CACHE_SIZE
    block_size: int = DEFAULT_BLOCK_SIZE


@dataclass
class Block:
    """Tokens whose end offset falls within the prompt chunk of a block."""

    tokens: list[int] = field(default_factory=list)


def _chunk_hashes(prompt: bytes, block_size: int):
    """Yield (end, hash) for each full chunk, each hash chained onto the previous one."""
    previous = 0
    for start in range(0, len(prompt) - block_size + 1, block_size):
        end = start + block_size
        previous = xxh64(previous.to_bytes(8, "little") + prompt[start:end])
        yield end, previous


class LRUTokenStore(TokenStore):
    """Maps chained hashes of fixed-size prompt chunks to their tokens, per model, with LRU eviction."""

    def __init__(self, config: LRUStoreConfig | None = None) -> None:
        config = config if config is not None else LRUStoreConfig()
        if config.cache_size <= 0:
            raise ValueError("cache size must be positive")
        if config.block_size <= 0:
            raise ValueError("block size must be positive")
        self.cache_size = config.cache_size
        self.block_size = config.block_size
        self._store: dict[str, LRUCache] = {}
        self._lock = threading.Lock()

    def add_tokenization(
        self,
        model_name: str,
        prompt: str,
        tokens: Sequence[int],
        offsets: Sequence[Offset],
    ) -> None:
        if not prompt or not tokens:
            return

        with self._lock:
            cache = self._store.get(model_name)
            if cache is None:
                cache = LRUCache(maxsize=self.cache_size)
                self._store[model_name] = cache

            count = min(len(tokens), len(offsets))
            token_idx = 0
            for end, block_hash in _chunk_hashes(prompt.encode("utf-8"), self.block_size):
                block = Block()
                while token_idx < count and offsets[token_idx][1] <= end:
                    block.tokens.append(tokens[token_idx])
                    token_idx += 1
                cache[block_hash] = block

    def find_longest_contained_tokens(self, prompt: str, model_name: str) -> list[int]:
        contained: list[int] = []
        with self._lock:
            cache = self._store.get(model_name)
            if cache is None:
                return contained
            for _, block_hash in _chunk_hashes(prompt.encode("utf-8"), self.block_size):
                block = cache.get(block_hash)
                if block is None:
                    break
                contained.extend(block.tokens)
        return contained