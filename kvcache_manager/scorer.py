"""Scoring of pods by how much of a request's KV-block chain they hold."""

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .kvblock import Key


class KVScoringStrategy(str, enum.Enum):
    """How pods are scored for KV-cache block reuse."""

    LONGEST_PREFIX = "LongestPrefix"


@dataclass
class KVBlockScorerConfig:
    """Which scoring strategy to use."""

    scoring_strategy: KVScoringStrategy | str = KVScoringStrategy.LONGEST_PREFIX


class LongestPrefixScorer:
    """Scores each pod by its count of consecutive block hits starting from the first block."""

    strategy = KVScoringStrategy.LONGEST_PREFIX

    def score(self, keys: Sequence[Key], key_to_pods: Mapping[Key, Sequence[str]]) -> dict[str, int]:
        """Map each pod holding the first block to the length of its unbroken run of hits."""
        if not keys:
            return {}

        first_pods = key_to_pods.get(keys[0], ())
        scores = {pod: 1 for pod in first_pods}
        active = set(first_pods)

        for key in keys[1:]:
            if not active:
                break
            active &= set(key_to_pods.get(key, ()))
            for pod in active:
                scores[pod] += 1

        return scores


def new_kv_block_scorer(config: KVBlockScorerConfig | None = None) -> LongestPrefixScorer:
    """Create the scorer for the configured strategy."""
    config = config if config is not None else KVBlockScorerConfig()
    try:
        strategy = KVScoringStrategy(config.scoring_strategy)
    except ValueError:
        raise ValueError(f"unsupported scoring strategy: {config.scoring_strategy}") from None
    if strategy is KVScoringStrategy.LONGEST_PREFIX:
        return LongestPrefixScorer()
    raise ValueError(f"unsupported scoring strategy: {strategy.value}")