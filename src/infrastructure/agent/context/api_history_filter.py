"""Effective API history resolution.

Compaction never deletes messages: it inserts a summary carrying a
``condense_id`` and tags the folded messages with ``condense_parent``.
This module resolves which of them are actually sent to the model.
A tagged message is hidden only while its summary is present, so losing a
summary never loses the underlying history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from src.domain.model.context.message import ContextMessage
from src.infrastructure.agent.context.truncation import estimate_tokens

MessageTokenizer = Callable[[ContextMessage], int]


@dataclass
class EffectiveHistoryResult:
    """Messages to send plus what was left out."""

    messages: list[ContextMessage]
    excluded_count: int = 0
    excluded_ids: list[str] = field(default_factory=list)
    token_count: int = 0
    has_summaries: bool = False


def build_summary_map(messages: Sequence[ContextMessage]) -> dict[str, ContextMessage]:
    """condense_id -> summary message, for summaries that carry an id."""
    return {
        message.condense_id: message
        for message in messages
        if message.is_summary and message.condense_id
    }


def summary_exists_for_condense_id(messages: Sequence[ContextMessage], condense_id: str) -> bool:
    return any(message.is_summary and message.condense_id == condense_id for message in messages)


def get_messages_with_condense_parent(
    messages: Sequence[ContextMessage], condense_id: str
) -> list[ContextMessage]:
    """Messages folded into the summary with condense_id."""
    return [message for message in messages if message.condense_parent == condense_id]


def should_include_in_api_history(
    message: ContextMessage,
    all_messages: Sequence[ContextMessage],
    include_summaries: bool = True,
    include_compressed: bool = False,
    summary_map: Optional[dict[str, ContextMessage]] = None,
) -> bool:
    """Decide whether one message is visible to the model.

    Pass a prebuilt ``summary_map`` when calling in a loop.
    """
    if message.is_summary and not include_summaries:
        return False
    if message.condense_parent and not include_compressed:
        summaries = summary_map if summary_map is not None else build_summary_map(all_messages)
        if message.condense_parent in summaries:
            return False
    return True


def get_compression_chain(
    messages: Sequence[ContextMessage], condense_id: str
) -> list[ContextMessage]:
    """Summaries from condense_id outward through nested compactions.

    Each summary's ``condense_parent`` names the summary that absorbed it.
    Cycles stop after every summary has been visited once.
    """
    summaries = build_summary_map(messages)
    chain: list[ContextMessage] = []
    visited: set[str] = set()
    current: Optional[str] = condense_id
    while current and current not in visited:
        summary = summaries.get(current)
        if summary is None:
            break
        visited.add(current)
        chain.append(summary)
        current = summary.condense_parent
    return chain


def get_effective_api_history(
    messages: Sequence[ContextMessage],
    max_messages: Optional[int] = None,
    max_tokens: Optional[int] = None,
    tokenizer: Optional[MessageTokenizer] = None,
) -> EffectiveHistoryResult:
    """Resolve the message subsequence sent to the model.

    Superseded messages are dropped first. ``max_messages`` and
    ``max_tokens`` then keep the earliest visible messages that fit.
    Applying the filter to its own output returns the same messages.

    Args:
        messages: Full history including summaries and folded messages.
        max_messages: Optional cap on the number of messages.
        max_tokens: Optional cap on total tokens.
        tokenizer: Per-message token counter, defaults to ``estimate_tokens``.
    """
    count = tokenizer or estimate_tokens
    summary_map = build_summary_map(messages)
    result = EffectiveHistoryResult(messages=[], has_summaries=bool(summary_map))

    visible: list[ContextMessage] = []
    for message in messages:
        if should_include_in_api_history(message, messages, summary_map=summary_map):
            visible.append(message)
        else:
            result.excluded_ids.append(message.id)

    limit_reached = False
    for message in visible:
        if limit_reached:
            result.excluded_ids.append(message.id)
            continue
        if max_messages is not None and len(result.messages) >= max_messages:
            limit_reached = True
            result.excluded_ids.append(message.id)
            continue
        tokens = count(message)
        if max_tokens is not None and result.token_count + tokens > max_tokens:
            limit_reached = True
            result.excluded_ids.append(message.id)
            continue
        result.messages.append(message)
        result.token_count += tokens

    result.excluded_count = len(result.excluded_ids)
    return result


def to_api_format(messages: Sequence[ContextMessage]) -> list[dict[str, Any]]:
    """Strip internal fields, keeping only role and content."""
    formatted: list[dict[str, Any]] = []
    for message in messages:
        content: Any = message.content
        if not isinstance(content, str):
            content = [part.to_dict() for part in content]
        formatted.append({"role": message.role.value, "content": content})
    return formatted
