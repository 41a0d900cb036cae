"""Eviction priority assignment.

Tiers, most protected first: ANCHOR, TOOL_PAIR, NORMAL, DISPOSABLE.
Within a tier, more recent messages rank higher, so eviction walks the
lowest tier oldest-first.
"""

from __future__ import annotations

from typing import Optional, Sequence

from src.domain.model.context.message import ContextMessage, MessagePriority
from src.infrastructure.agent.context.tool_pairing import ToolPairAnalysis, analyze_tool_pairs

DEFAULT_ANCHOR_COUNT = 1


def calculate_priority(
    message: ContextMessage,
    index: int,
    total: int,
    anchor_count: int,
    analysis: ToolPairAnalysis,
) -> MessagePriority:
    """Priority for a single message at position index of total."""
    if message.is_summary:
        return MessagePriority.ANCHOR
    if anchor_count > 0 and (index < anchor_count or index >= total - anchor_count):
        return MessagePriority.ANCHOR
    if index in analysis.paired_message_indices:
        return MessagePriority.TOOL_PAIR
    if message.priority == MessagePriority.DISPOSABLE:
        return MessagePriority.DISPOSABLE
    return MessagePriority.NORMAL


def assign_priorities(
    messages: Sequence[ContextMessage],
    anchor_count: int = DEFAULT_ANCHOR_COUNT,
    analysis: Optional[ToolPairAnalysis] = None,
) -> ToolPairAnalysis:
    """Label every message in place and return the pairing analysis used.

    Messages a caller marked DISPOSABLE keep that label unless anchoring or
    pairing promotes them.
    """
    if analysis is None:
        analysis = analyze_tool_pairs(messages)
    total = len(messages)
    for index, message in enumerate(messages):
        message.priority = calculate_priority(message, index, total, anchor_count, analysis)
    return analysis


def eviction_order(messages: Sequence[ContextMessage]) -> list[int]:
    """Indices of evictable messages, first to evict first.

    Sorted by (priority, index): lowest tier first, oldest first within a
    tier. ANCHOR messages are never included. Deterministic for identical
    input.
    """
    candidates = [
        index
        for index, message in enumerate(messages)
        if message.priority != MessagePriority.ANCHOR
    ]
    candidates.sort(key=lambda index: (int(messages[index].priority), index))
    return candidates
