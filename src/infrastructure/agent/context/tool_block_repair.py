"""Detection and repair of broken tool invocation / result structure.

Truncation and recovery can leave a result whose invocation was evicted, an
invocation that is never answered, or a result placed before the invocation
it answers. Providers reject such histories. The helpers here report those
problems and return repaired message lists. Input messages are not mutated;
changed messages are returned as new objects.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Sequence

from src.domain.model.context.message import (
    ContextMessage,
    MessagePriority,
    MessageRole,
    TextPart,
    ToolUsePart,
)
from src.infrastructure.agent.context.tool_pairing import (
    OrphanedBlock,
    ToolPairAnalysis,
    analyze_tool_pairs,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_TOOL_NAME = "unknown_tool"
PLACEHOLDER_TEXT = "[Placeholder: Original tool invocation was lost or truncated]"


class RepairType(str, Enum):
    REORDER = "reorder"
    REMOVE_ORPHAN_USE = "remove_orphan_use"
    ADD_PLACEHOLDER = "add_placeholder"


class IssueType(str, Enum):
    WRONG_ORDER = "wrong_order"
    ORPHAN_USE = "orphan_use"
    ORPHAN_RESULT = "orphan_result"


@dataclass(frozen=True)
class RepairAction:
    type: RepairType
    tool_id: str
    description: str


@dataclass(frozen=True)
class ToolBlockIssue:
    type: IssueType
    tool_id: str
    message: str
    message_index: int


@dataclass
class RepairResult:
    """Outcome of ``fix_mismatched_tool_blocks``.

    Attributes:
        messages: Repaired message list.
        repairs: Changes made, in the order they were applied.
        warnings: Problems left in place because the options forbid fixing them.
    """

    messages: list[ContextMessage]
    repairs: list[RepairAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return bool(self.repairs)


@dataclass(frozen=True)
class ToolBlockHealthSummary:
    total_pairs: int = 0
    complete_pairs: int = 0
    orphaned_uses: int = 0
    orphaned_results: int = 0
    order_issues: int = 0


def _find_misordered(analysis: ToolPairAnalysis) -> list[tuple[OrphanedBlock, OrphanedBlock]]:
    """(result, invocation) pairs where the result comes first.

    ``analyze_tool_pairs`` only matches a result to an earlier invocation, so
    such a pair shows up as one orphaned result plus one orphaned use.
    """
    later_uses: dict[str, OrphanedBlock] = {}
    for orphan in analysis.orphaned_uses:
        later_uses.setdefault(orphan.tool_id, orphan)
    found = []
    for orphan in analysis.orphaned_results:
        use = later_uses.get(orphan.tool_id)
        if use is not None and use.message_index > orphan.message_index:
            found.append((orphan, use))
            del later_uses[orphan.tool_id]
    return found


def _true_orphans(
    analysis: ToolPairAnalysis,
) -> tuple[list[tuple[OrphanedBlock, OrphanedBlock]], list[OrphanedBlock], list[OrphanedBlock]]:
    misordered = _find_misordered(analysis)
    matched_results = {result for result, _ in misordered}
    matched_uses = {use for _, use in misordered}
    uses = [o for o in analysis.orphaned_uses if o not in matched_uses]
    results = [o for o in analysis.orphaned_results if o not in matched_results]
    return misordered, uses, results


def validate_tool_block_pairing(messages: Sequence[ContextMessage]) -> list[ToolBlockIssue]:
    """Report pairing problems without changing anything."""
    if not messages:
        return []
    misordered, orphan_uses, orphan_results = _true_orphans(analyze_tool_pairs(messages))

    issues = [
        ToolBlockIssue(
            type=IssueType.WRONG_ORDER,
            tool_id=result.tool_id,
            message=(
                f"tool_result at index {result.message_index} appears before "
                f"tool_use at index {use.message_index}"
            ),
            message_index=result.message_index,
        )
        for result, use in misordered
    ]
    issues.extend(
        ToolBlockIssue(
            type=IssueType.ORPHAN_USE,
            tool_id=orphan.tool_id,
            message=(
                f"tool_use ({orphan.tool_id}) at index {orphan.message_index} "
                f"has no matching tool_result"
            ),
            message_index=orphan.message_index,
        )
        for orphan in orphan_uses
    )
    issues.extend(
        ToolBlockIssue(
            type=IssueType.ORPHAN_RESULT,
            tool_id=orphan.tool_id,
            message=(
                f"tool_result ({orphan.tool_id}) at index {orphan.message_index} "
                f"has no matching tool_use"
            ),
            message_index=orphan.message_index,
        )
        for orphan in orphan_results
    )
    return issues


def has_tool_block_issues(messages: Sequence[ContextMessage]) -> bool:
    if not messages:
        return False
    return analyze_tool_pairs(messages).has_orphans


def reorder_tool_result(
    messages: Sequence[ContextMessage], result_index: int, use_index: int
) -> list[ContextMessage]:
    """Move the message at result_index to just after the one at use_index.

    Out-of-range indices, or a result already after its invocation, leave
    the order unchanged.
    """
    reordered = list(messages)
    size = len(reordered)
    if not (0 <= result_index < size and 0 <= use_index < size):
        return reordered
    if result_index >= use_index:
        return reordered
    result = reordered.pop(result_index)
    reordered.insert(use_index, result)
    return reordered


def create_placeholder_tool_use(
    tool_id: str, tool_name: str = PLACEHOLDER_TOOL_NAME
) -> ContextMessage:
    """Assistant message invoking tool_id, to stand in for a lost invocation."""
    return ContextMessage(
        id=f"placeholder-{uuid.uuid4().hex[:12]}",
        role=MessageRole.ASSISTANT,
        content=[
            TextPart(text=PLACEHOLDER_TEXT),
            ToolUsePart(id=tool_id, name=tool_name, input={}),
        ],
        priority=MessagePriority.TOOL_PAIR,
    )


def _remove_blocks(
    messages: list[ContextMessage], orphans: Sequence[OrphanedBlock]
) -> list[ContextMessage]:
    by_message: dict[int, set[int]] = {}
    for orphan in orphans:
        by_message.setdefault(orphan.message_index, set()).add(orphan.block_index)

    result: list[ContextMessage] = []
    for index, message in enumerate(messages):
        blocks = by_message.get(index)
        if not blocks:
            result.append(message)
            continue
        parts = [part for i, part in enumerate(message.content) if i not in blocks]
        if any(not isinstance(part, TextPart) or part.text for part in parts):
            # Cached token counts no longer apply to the reduced content.
            result.append(replace(message, content=parts, tokens=None))
    return result


def fix_mismatched_tool_blocks(
    messages: Sequence[ContextMessage],
    remove_orphaned_uses: bool = False,
    add_placeholder_uses: bool = True,
) -> RepairResult:
    """Repair tool pairing in messages.

    1. A result that precedes its invocation is moved right after it.
    2. An unanswered invocation is reported, or removed when
       ``remove_orphaned_uses`` is set. A message left without content is
       dropped.
    3. A result with no invocation gets a placeholder invocation inserted
       before it, unless ``add_placeholder_uses`` is False.
    """
    result = RepairResult(messages=list(messages))
    if not messages:
        return result

    for tool_id in [r.tool_id for r, _ in _find_misordered(analyze_tool_pairs(result.messages))]:
        misordered = _find_misordered(analyze_tool_pairs(result.messages))
        located = next(((r, u) for r, u in misordered if r.tool_id == tool_id), None)
        if located is None:
            continue
        orphan_result, orphan_use = located
        result.messages = reorder_tool_result(
            result.messages, orphan_result.message_index, orphan_use.message_index
        )
        result.repairs.append(
            RepairAction(
                RepairType.REORDER,
                tool_id,
                f"Moved tool_result ({tool_id}) after its tool_use",
            )
        )

    _, orphan_uses, _ = _true_orphans(analyze_tool_pairs(result.messages))
    if remove_orphaned_uses and orphan_uses:
        result.messages = _remove_blocks(result.messages, orphan_uses)
        result.repairs.extend(
            RepairAction(
                RepairType.REMOVE_ORPHAN_USE,
                orphan.tool_id,
                f"Removed tool_use ({orphan.tool_id}) with no matching result",
            )
            for orphan in orphan_uses
        )
    else:
        result.warnings.extend(
            f"tool_use ({orphan.tool_id}) at index {orphan.message_index} has no matching result"
            for orphan in orphan_uses
        )

    _, _, orphan_results = _true_orphans(analyze_tool_pairs(result.messages))
    if add_placeholder_uses:
        for orphan in sorted(orphan_results, key=lambda o: o.message_index, reverse=True):
            result.messages.insert(orphan.message_index, create_placeholder_tool_use(orphan.tool_id))
        result.repairs.extend(
            RepairAction(
                RepairType.ADD_PLACEHOLDER,
                orphan.tool_id,
                f"Added placeholder tool_use for orphaned result ({orphan.tool_id})",
            )
            for orphan in orphan_results
        )
    else:
        result.warnings.extend(
            f"tool_result ({orphan.tool_id}) at index {orphan.message_index} has no matching use"
            for orphan in orphan_results
        )

    if result.repairs:
        logger.debug(f"[ToolBlockRepair] Applied {len(result.repairs)} repairs")
    for warning in result.warnings:
        logger.warning(f"[ToolBlockRepair] {warning}")
    return result


def get_tool_block_health_summary(messages: Sequence[ContextMessage]) -> ToolBlockHealthSummary:
    """Counts of complete, misordered and orphaned tool pairs."""
    if not messages:
        return ToolBlockHealthSummary()
    analysis = analyze_tool_pairs(messages)
    misordered, orphan_uses, orphan_results = _true_orphans(analysis)
    complete = len(analysis.pairs) + len(misordered)
    return ToolBlockHealthSummary(
        total_pairs=complete + len(orphan_uses) + len(orphan_results),
        complete_pairs=complete,
        orphaned_uses=len(orphan_uses),
        orphaned_results=len(orphan_results),
        order_issues=len(misordered),
    )
