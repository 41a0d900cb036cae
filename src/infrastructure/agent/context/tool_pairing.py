"""Tool invocation / result pairing analysis.

A tool-use part and the tool-result part answering it must stay together:
providers reject a history with a result whose invocation is missing, or an
invocation that is never answered. The analysis here tells truncation which
messages are linked so they can be evicted as a group.

Pairs need not be adjacent, one message may carry several invocations, and
results may arrive several messages later.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Sequence

from src.domain.model.context.message import (
    ContextMessage,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)


@dataclass(frozen=True)
class ToolPair:
    """Location of a matched invocation and result."""

    tool_id: str
    tool_name: str
    use_message_index: int
    use_block_index: int
    result_message_index: int
    result_block_index: int

    @property
    def is_complete(self) -> bool:
        return self.result_message_index >= 0


@dataclass(frozen=True)
class OrphanedBlock:
    """An invocation with no result, or a result with no invocation."""

    message_index: int
    block_index: int
    tool_id: str


@dataclass
class ToolPairAnalysis:
    """Result of ``analyze_tool_pairs``.

    Attributes:
        pairs: Matched invocation/result pairs in result order.
        orphaned_uses: Invocations with no located result (orphan risk).
        orphaned_results: Results with no preceding invocation.
        paired_message_indices: Every message index taking part in a pair.
    """

    pairs: list[ToolPair] = field(default_factory=list)
    orphaned_uses: list[OrphanedBlock] = field(default_factory=list)
    orphaned_results: list[OrphanedBlock] = field(default_factory=list)
    paired_message_indices: set[int] = field(default_factory=set)
    links: dict[int, set[int]] = field(default_factory=dict, repr=False)

    @property
    def has_orphans(self) -> bool:
        return bool(self.orphaned_uses or self.orphaned_results)


def extract_tool_use_blocks(message: ContextMessage) -> list[tuple[int, ToolUsePart]]:
    """(block index, part) for every tool-use part in the message."""
    if isinstance(message.content, str):
        return []
    return [(i, part) for i, part in enumerate(message.content) if isinstance(part, ToolUsePart)]


def extract_tool_result_blocks(message: ContextMessage) -> list[tuple[int, ToolResultPart]]:
    """(block index, part) for every tool-result part in the message."""
    if isinstance(message.content, str):
        return []
    return [
        (i, part) for i, part in enumerate(message.content) if isinstance(part, ToolResultPart)
    ]


def has_tool_blocks(message: ContextMessage) -> bool:
    if isinstance(message.content, str):
        return False
    for part in message.content:
        match part:
            case ToolUsePart() | ToolResultPart():
                return True
            case TextPart():
                continue
    return False


def analyze_tool_pairs(messages: Sequence[ContextMessage]) -> ToolPairAnalysis:
    """Scan messages once and match tool invocations to their results.

    A result is matched to the most recent unanswered invocation with the
    same id that appears before it. Runs in O(n) over all content parts.
    """
    analysis = ToolPairAnalysis()
    pending: dict[str, tuple[int, int, str]] = {}

    for msg_index, message in enumerate(messages):
        if isinstance(message.content, str):
            continue
        for block_index, part in enumerate(message.content):
            match part:
                case ToolUsePart(id=tool_id, name=name):
                    pending[tool_id] = (msg_index, block_index, name)
                case ToolResultPart(tool_use_id=tool_id):
                    use = pending.pop(tool_id, None)
                    if use is None:
                        analysis.orphaned_results.append(
                            OrphanedBlock(msg_index, block_index, tool_id)
                        )
                        continue
                    use_msg, use_block, name = use
                    analysis.pairs.append(
                        ToolPair(
                            tool_id=tool_id,
                            tool_name=name,
                            use_message_index=use_msg,
                            use_block_index=use_block,
                            result_message_index=msg_index,
                            result_block_index=block_index,
                        )
                    )
                    analysis.paired_message_indices.add(use_msg)
                    analysis.paired_message_indices.add(msg_index)
                    analysis.links.setdefault(use_msg, set()).add(msg_index)
                    analysis.links.setdefault(msg_index, set()).add(use_msg)
                case TextPart():
                    pass

    for tool_id, (msg_index, block_index, _name) in pending.items():
        analysis.orphaned_uses.append(OrphanedBlock(msg_index, block_index, tool_id))
    analysis.orphaned_uses.sort(key=lambda o: (o.message_index, o.block_index))
    return analysis


def get_linked_indices(analysis: ToolPairAnalysis, message_index: int) -> list[int]:
    """All message indices that must be kept or evicted with message_index.

    Follows pair links transitively, so a message holding results for two
    different invocation messages links all three. Returns a sorted list
    including message_index, or [] if it takes part in no pair.
    """
    if message_index not in analysis.links:
        return []
    seen = {message_index}
    queue = deque([message_index])
    while queue:
        current = queue.popleft()
        for neighbour in analysis.links.get(current, ()):
            if neighbour not in seen:
                seen.add(neighbour)
                queue.append(neighbour)
    return sorted(seen)


def are_in_same_tool_pair(analysis: ToolPairAnalysis, index_a: int, index_b: int) -> bool:
    """True if both messages belong to the same linked group."""
    if index_a == index_b:
        return index_a in analysis.links
    return index_b in get_linked_indices(analysis, index_a)
