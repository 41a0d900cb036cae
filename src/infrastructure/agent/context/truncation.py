"""Priority-based truncation with tool-pair atomicity.

``truncate`` takes priority-labeled messages and a token target, then
evicts the lowest tiers oldest-first. A message linked to others through
tool pairs is evicted together with all of them, unless one of the group
is ANCHOR, in which case the whole group is locked and skipped.

If only protected messages remain and the target is still exceeded, the
result reports ``over_budget=True`` instead of raising.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import orjson

from src.domain.model.context.message import (
    ContextMessage,
    MessagePriority,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from src.infrastructure.agent.context.priority import eviction_order
from src.infrastructure.agent.context.tool_pairing import (
    ToolPairAnalysis,
    analyze_tool_pairs,
    get_linked_indices,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

TextTokenizer = Callable[[str], int]


def message_text(message: ContextMessage) -> str:
    """Flatten a message into the text that is billed as tokens."""
    if isinstance(message.content, str):
        return message.content
    chunks: list[str] = []
    for part in message.content:
        match part:
            case TextPart(text=text):
                chunks.append(text)
            case ToolUsePart(name=name, input=tool_input):
                chunks.append(name)
                chunks.append(orjson.dumps(tool_input, option=orjson.OPT_NON_STR_KEYS).decode())
            case ToolResultPart():
                chunks.append(part.text)
    return "".join(chunks)


def estimate_tokens(
    message: ContextMessage, tokenizer: Optional[TextTokenizer] = None
) -> int:
    """Token cost of a message.

    Uses the precomputed ``tokens`` field when set, then the injected
    tokenizer, then a chars/4 estimate.
    """
    if message.tokens is not None:
        return message.tokens
    text = message_text(message)
    if tokenizer is not None:
        return tokenizer(text)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_tokens(
    messages: Sequence[ContextMessage], tokenizer: Optional[TextTokenizer] = None
) -> int:
    return sum(estimate_tokens(message, tokenizer) for message in messages)


def fits_in_budget(
    messages: Sequence[ContextMessage],
    budget: int,
    tokenizer: Optional[TextTokenizer] = None,
) -> bool:
    """True if messages fit in budget. Stops counting once over."""
    total = 0
    for message in messages:
        total += estimate_tokens(message, tokenizer)
        if total > budget:
            return False
    return True


@dataclass(frozen=True)
class TruncationSnapshot:
    """Pre-truncation state.

    Holds copies taken when truncation started, so later priority passes or
    edits on the live messages do not leak in. ``restore()`` hands back
    fresh copies on every call.
    """

    messages: tuple[ContextMessage, ...]
    token_count: int
    created_at: float = field(default_factory=time.time)

    @property
    def message_ids(self) -> list[str]:
        return [message.id for message in self.messages]

    def restore(self) -> list[ContextMessage]:
        return [message.copy() for message in self.messages]


@dataclass
class TruncationResult:
    """Outcome of a truncation pass.

    Attributes:
        messages: Remaining messages in original order.
        evicted: Removed messages in original order.
        removed_ids: Ids of removed messages.
        token_count: Tokens remaining.
        original_token_count: Tokens before truncation.
        target_tokens: Requested target.
        over_budget: Target could not be reached.
        locked_pairs: Pair groups skipped because they contain an ANCHOR.
        snapshot: State before truncation.
    """

    messages: list[ContextMessage]
    evicted: list[ContextMessage]
    removed_ids: list[str]
    token_count: int
    original_token_count: int
    target_tokens: int
    over_budget: bool
    locked_pairs: int
    snapshot: TruncationSnapshot

    @property
    def removed_count(self) -> int:
        return len(self.evicted)

    @property
    def tokens_saved(self) -> int:
        return self.original_token_count - self.token_count


def truncate(
    messages: Sequence[ContextMessage],
    target_tokens: int,
    *,
    analysis: Optional[ToolPairAnalysis] = None,
    tokenizer: Optional[TextTokenizer] = None,
    preserve_tool_pairs: bool = True,
) -> TruncationResult:
    """Reduce priority-labeled messages to at most target_tokens.

    Args:
        messages: Messages with priorities already assigned.
        target_tokens: Token ceiling for the remaining messages.
        analysis: Pairing analysis for messages, computed if omitted.
        tokenizer: Text token counter for messages without ``tokens``.
        preserve_tool_pairs: Evict linked tool messages as a group. Only
            emergency recovery turns this off.

    Returns:
        TruncationResult with remaining and evicted messages in order.
    """
    token_costs = [estimate_tokens(message, tokenizer) for message in messages]
    original_total = sum(token_costs)
    snapshot = TruncationSnapshot(
        messages=tuple(message.copy() for message in messages), token_count=original_total
    )

    current = original_total
    evicted: set[int] = set()
    locked_groups: set[tuple[int, ...]] = set()

    if current > target_tokens:
        if preserve_tool_pairs and analysis is None:
            analysis = analyze_tool_pairs(messages)

        for index in eviction_order(messages):
            if current <= target_tokens:
                break
            if index in evicted:
                continue

            group = [index]
            if preserve_tool_pairs and analysis is not None:
                group = get_linked_indices(analysis, index) or [index]

            if any(messages[member].priority == MessagePriority.ANCHOR for member in group):
                locked_groups.add(tuple(group))
                continue

            for member in group:
                if member not in evicted:
                    evicted.add(member)
                    current -= token_costs[member]

    remaining = [message for i, message in enumerate(messages) if i not in evicted]
    removed = [message for i, message in enumerate(messages) if i in evicted]
    over_budget = current > target_tokens

    if over_budget:
        logger.debug(
            f"[Truncation] Target {target_tokens} unreachable, {current} tokens remain "
            f"after evicting {len(removed)} messages ({len(locked_groups)} locked pairs)"
        )

    return TruncationResult(
        messages=remaining,
        evicted=removed,
        removed_ids=[message.id for message in removed],
        token_count=current,
        original_token_count=original_total,
        target_tokens=target_tokens,
        over_budget=over_budget,
        locked_pairs=len(locked_groups),
        snapshot=snapshot,
    )
