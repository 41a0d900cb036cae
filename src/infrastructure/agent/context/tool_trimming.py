"""Trimming of oversized tool outputs.

Tool results larger than ``max_output_chars`` are cut down and marked, so
the conversation keeps the pair structure but stops paying for huge
payloads. Results of protected tools are never touched. Input messages are
not mutated; changed messages are returned as new objects.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Sequence

from src.domain.model.context.message import (
    ContentPart,
    ContextMessage,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from src.infrastructure.agent.context.config import DEFAULT_PROTECTED_TOOLS

DEFAULT_MAX_OUTPUT_CHARS = 10_000
DEFAULT_TRUNCATION_MARKER = "\n\n[... truncated]"
# Below this many history tokens trimming is not worth doing.
PRUNE_MINIMUM_TOKENS = 20_000


@dataclass
class PruneResult:
    messages: list[ContextMessage]
    trimmed_count: int = 0
    chars_removed: int = 0
    tokens_saved: int = 0
    trimmed_tools: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CompactedBlockLocation:
    message_index: int
    block_index: int
    tool_id: str
    compacted_at: float


@dataclass(frozen=True)
class ToolCompactionStats:
    """Share of tool results that were trimmed, and how long ago.

    Ages are in seconds relative to the ``now`` passed to ``get_compaction_stats``.
    """

    total_tool_results: int = 0
    compacted_count: int = 0
    compaction_rate: float = 0.0
    oldest_compaction: Optional[float] = None
    newest_compaction: Optional[float] = None
    average_age: Optional[float] = None


def is_protected_tool(tool_name: str, protected_tools: Iterable[str]) -> bool:
    normalized = tool_name.lower()
    return any(name.lower() == normalized for name in protected_tools)


def build_tool_name_map(messages: Sequence[ContextMessage]) -> dict[str, str]:
    """tool_use id -> tool name for every invocation in messages."""
    names: dict[str, str] = {}
    for message in messages:
        if isinstance(message.content, str):
            continue
        for part in message.content:
            if isinstance(part, ToolUsePart):
                names[part.id] = part.name
    return names


def _trim_text_parts(parts: Sequence[TextPart], max_chars: int, marker: str) -> list[TextPart]:
    result: list[TextPart] = []
    remaining = max_chars
    for part in parts:
        if remaining <= 0:
            break
        if len(part.text) <= remaining:
            result.append(part)
            remaining -= len(part.text)
        else:
            keep = max(0, remaining - len(marker))
            result.append(TextPart(text=part.text[:keep] + marker))
            remaining = 0
    return result


def trim_tool_result(
    part: ToolResultPart,
    max_chars: int,
    marker: str = DEFAULT_TRUNCATION_MARKER,
    track_compaction: bool = False,
) -> tuple[ToolResultPart, int]:
    """Trim one result part. Returns (part, characters removed)."""
    length = len(part.text)
    if length <= max_chars:
        return part, 0

    if isinstance(part.content, str):
        keep = max(0, max_chars - len(marker))
        new_content: str | list[TextPart] = part.content[:keep] + marker
    else:
        new_content = _trim_text_parts(part.content, max_chars, marker)

    trimmed = replace(part, content=new_content)
    if track_compaction:
        trimmed = mark_as_compacted(trimmed)
    return trimmed, length - max_chars


def prune_tool_outputs(
    messages: Sequence[ContextMessage],
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    protected_tools: Iterable[str] = DEFAULT_PROTECTED_TOOLS,
    marker: str = DEFAULT_TRUNCATION_MARKER,
    track_compaction: bool = False,
) -> PruneResult:
    """Trim every oversized, non-protected tool result in messages."""
    protected = tuple(protected_tools)
    tool_names = build_tool_name_map(messages)
    result = PruneResult(messages=[])
    trimmed_tools: set[str] = set()

    for message in messages:
        if isinstance(message.content, str):
            result.messages.append(message)
            continue

        new_parts: list[ContentPart] = []
        changed = False
        for part in message.content:
            if not isinstance(part, ToolResultPart):
                new_parts.append(part)
                continue
            tool_name = tool_names.get(part.tool_use_id)
            if tool_name and is_protected_tool(tool_name, protected):
                new_parts.append(part)
                continue
            trimmed, removed = trim_tool_result(part, max_output_chars, marker, track_compaction)
            if removed:
                changed = True
                result.trimmed_count += 1
                result.chars_removed += removed
                trimmed_tools.add(tool_name or "unknown")
            new_parts.append(trimmed)

        if changed:
            # Cached token counts no longer apply to the trimmed content.
            result.messages.append(replace(message, content=new_parts, tokens=None))
        else:
            result.messages.append(message)

    result.tokens_saved = math.floor(result.chars_removed / 4)
    result.trimmed_tools = sorted(trimmed_tools)
    return result


def mark_as_compacted(part: ToolResultPart, timestamp: Optional[float] = None) -> ToolResultPart:
    """Copy of part stamped with the time its output was compacted."""
    return replace(part, compacted_at=time.time() if timestamp is None else timestamp)


def _tool_results(messages: Sequence[ContextMessage]) -> Iterable[tuple[int, int, ToolResultPart]]:
    for message_index, message in enumerate(messages):
        if isinstance(message.content, str):
            continue
        for block_index, part in enumerate(message.content):
            if isinstance(part, ToolResultPart):
                yield message_index, block_index, part


def find_compacted_blocks(messages: Sequence[ContextMessage]) -> list[CompactedBlockLocation]:
    return [
        CompactedBlockLocation(message_index, block_index, part.tool_use_id, part.compacted_at)
        for message_index, block_index, part in _tool_results(messages)
        if part.compacted_at is not None
    ]


def get_compaction_stats(
    messages: Sequence[ContextMessage], now: Optional[float] = None
) -> ToolCompactionStats:
    """Count compacted tool results in messages and summarize their age."""
    now = time.time() if now is None else now
    total = 0
    stamps: list[float] = []
    for _, _, part in _tool_results(messages):
        total += 1
        if part.compacted_at is not None:
            stamps.append(part.compacted_at)

    if not stamps:
        return ToolCompactionStats(total_tool_results=total)
    return ToolCompactionStats(
        total_tool_results=total,
        compacted_count=len(stamps),
        compaction_rate=len(stamps) / total,
        oldest_compaction=min(stamps),
        newest_compaction=max(stamps),
        average_age=sum(now - stamp for stamp in stamps) / len(stamps),
    )
