"""Protect compaction summaries from being compacted again.

Summarizing a summary loses detail fast. The filter picks which existing
summaries stay out of the next compaction:

- ``all``: every summary
- ``recent``: the newest ``max_protected_summaries`` by creation time
- ``weighted``: the highest scoring by size, compressed-message count and recency
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from src.domain.model.context.message import ContextMessage
from src.infrastructure.agent.context.improvements.types import (
    ProtectionStrategy,
    SummaryProtectionConfig,
)

DEFAULT_SUMMARY_PROTECTION_CONFIG = SummaryProtectionConfig()

TOKEN_WEIGHT = 0.3
COMPRESSED_COUNT_WEIGHT = 0.4
RECENCY_WEIGHT = 0.3


@dataclass(frozen=True)
class ProtectionStats:
    total_summaries: int
    protected_count: int
    unprotected_count: int
    strategy: ProtectionStrategy
    max_protected: int
    enabled: bool


def _normalize(value: float, low: float, high: float) -> float:
    if high <= low:
        return 1.0
    return (value - low) / (high - low)


class SummaryProtectionFilter:
    def __init__(self, config: Optional[SummaryProtectionConfig] = None):
        self.config = config or DEFAULT_SUMMARY_PROTECTION_CONFIG

    @staticmethod
    def is_summary_message(message: ContextMessage) -> bool:
        return message.is_summary or bool(message.condense_id)

    def get_protected_ids(self, messages: Sequence[ContextMessage]) -> set[str]:
        if not self.config.enabled:
            return set()
        summaries = [m for m in messages if self.is_summary_message(m)]
        if not summaries:
            return set()

        limit = self.config.max_protected_summaries
        if self.config.strategy == "all":
            selected = summaries
        elif self.config.strategy == "weighted":
            selected = self._by_weight(summaries)[:limit]
        else:
            # Stable on ties: later position counts as newer.
            ordered = sorted(
                enumerate(summaries),
                key=lambda item: (item[1].created_at or 0.0, item[0]),
                reverse=True,
            )
            selected = [message for _, message in ordered[:limit]]
        return {message.id for message in selected}

    def filter_candidates(
        self,
        candidates: Sequence[ContextMessage],
        all_messages: Sequence[ContextMessage],
    ) -> list[ContextMessage]:
        """Drop protected summaries from a compaction candidate list.

        Protection is decided over ``all_messages`` so that a summary outside
        the candidate window still counts toward the limit.
        """
        protected = self.get_protected_ids(all_messages)
        if not protected:
            return list(candidates)
        return [message for message in candidates if message.id not in protected]

    def get_protection_stats(self, messages: Sequence[ContextMessage]) -> ProtectionStats:
        total = sum(1 for m in messages if self.is_summary_message(m))
        protected = len(self.get_protected_ids(messages))
        return ProtectionStats(
            total_summaries=total,
            protected_count=protected,
            unprotected_count=total - protected,
            strategy=self.config.strategy,
            max_protected=self.config.max_protected_summaries,
            enabled=self.config.enabled,
        )

    @staticmethod
    def _by_weight(summaries: list[ContextMessage]) -> list[ContextMessage]:
        tokens = [m.tokens or 0 for m in summaries]
        counts = [int(m.metadata.get("compressed_count", 0) or 0) for m in summaries]
        times = [m.created_at or 0.0 for m in summaries]
        max_tokens = max(tokens) or 1
        max_count = max(counts) or 1
        oldest, newest = min(times), max(times)

        scored = []
        for index, message in enumerate(summaries):
            score = (
                TOKEN_WEIGHT * tokens[index] / max_tokens
                + COMPRESSED_COUNT_WEIGHT * counts[index] / max_count
                + RECENCY_WEIGHT * _normalize(times[index], oldest, newest)
            )
            scored.append((score, index, message))
        scored.sort(key=lambda item: (-item[0], -item[1]))
        return [message for _, _, message in scored]


def create_summary_protection_filter(**overrides) -> SummaryProtectionFilter:
    return SummaryProtectionFilter(SummaryProtectionConfig(**overrides))
