"""A character trie that records, per prefix, the last token fully contained in it."""

from __future__ import annotations

import threading
from collections.abc import Sequence

from .prefixstore import Offset, TokenStore


class _Node:
    __slots__ = ("children", "token_id", "token_index")

    def __init__(self) -> None:
        self.children: dict[str, _Node] = {}
        self.token_id = 0
        self.token_index = -1


class _Trie:
    def __init__(self) -> None:
        self.root = _Node()
        self.lock = threading.Lock()

    def add_full_tokenization(
        self, prompt: str, tokens: Sequence[int], offsets: Sequence[Offset]
    ) -> None:
        self.root.token_index = 0
        self.root.token_id = tokens[0]
        last_k = 0

        node = self.root
        byte_pos = 0
        for char in prompt:
            # Positions are byte offsets into the UTF-8 prompt: the start of
            # this character plus one.
            char_end = byte_pos + 1
            byte_pos += len(char.encode("utf-8", "surrogatepass"))

            k = last_k
            while k < len(offsets) and offsets[k][1] <= char_end:
                last_k = max(last_k, k)
                k += 1

            child = node.children.get(char)
            if child is None:
                child = node.children[char] = _Node()
            node = child
            node.token_index = last_k
            node.token_id = tokens[last_k]

    def find_longest_contained_tokens(self, prompt: str) -> list[int]:
        contained: list[int] = []
        last_seen = -1
        node = self.root
        if node.token_index > last_seen:
            contained.append(node.token_id)
            last_seen = node.token_index
        for char in prompt:
            node = node.children.get(char)
            if node is None:
                break
            if node.token_index > last_seen:
                contained.append(node.token_id)
                last_seen = node.token_index
        return contained


class ContainedTokenStore(TokenStore):
    """Keeps one character trie per model."""

    def __init__(self) -> None:
        self._tries: dict[str, _Trie] = {}
        self._lock = threading.Lock()

    def add_tokenization(
        self,
        model_name: str,
        prompt: str,
        tokens: Sequence[int],
        offsets: Sequence[Offset],
    ) -> None:
        if not prompt or not tokens or len(tokens) != len(offsets):
            return
        with self._lock:
            trie = self._tries.get(model_name)
            if trie is None:
                trie = self._tries[model_name] = _Trie()
        with trie.lock:
            trie.add_full_tokenization(prompt, tokens, offsets)

    def find_longest_contained_tokens(self, prompt: str, model_name: str) -> list[int]:
        with self._lock:
            trie = self._tries.get(model_name)
        if trie is None:
            return []
        with trie.lock:
            return trie.find_longest_contained_tokens(prompt)