"""
Unit tests for tool pairing analysis.

Tests cover:
- analyze_tool_pairs() matching and orphan detection
- get_linked_indices() transitive grouping
- are_in_same_tool_pair()
"""

import pytest

from src.domain.model.context.message import (
    ContextMessage,
    MessageRole,
    ToolResultPart,
    ToolUsePart,
)
from src.infrastructure.agent.context.tool_pairing import (
    analyze_tool_pairs,
    are_in_same_tool_pair,
    extract_tool_result_blocks,
    extract_tool_use_blocks,
    get_linked_indices,
    has_tool_blocks,
)
from src.tests.unit.agent.context.test_helper import (
    text_message,
    tool_result_message,
    tool_use_message,
)


@pytest.mark.unit
class TestAnalyzeToolPairs:
    """Tests for analyze_tool_pairs()."""

    def test_simple_pair(self, conversation):
        """Test adjacent invocation and result are paired."""
        analysis = analyze_tool_pairs(conversation)
        assert len(analysis.pairs) == 1
        pair = analysis.pairs[0]
        assert pair.tool_id == "call_1"
        assert pair.tool_name == "read_file"
        assert (pair.use_message_index, pair.result_message_index) == (2, 3)
        assert pair.use_block_index == 1
        assert pair.is_complete
        assert analysis.paired_message_indices == {2, 3}
        assert not analysis.has_orphans

    def test_non_adjacent_pair(self):
        """Test results may arrive several messages later."""
        messages = [
            tool_use_message("a", "t1"),
            text_message("b"),
            text_message("c"),
            tool_result_message("d", "t1"),
        ]
        analysis = analyze_tool_pairs(messages)
        assert analysis.paired_message_indices == {0, 3}

    def test_orphans(self):
        """Test unmatched invocations and results are reported."""
        messages = [
            tool_result_message("r0", "ghost"),
            tool_use_message("a", "t1"),
        ]
        analysis = analyze_tool_pairs(messages)
        assert analysis.has_orphans
        assert [o.tool_id for o in analysis.orphaned_results] == ["ghost"]
        assert [o.tool_id for o in analysis.orphaned_uses] == ["t1"]
        assert analysis.pairs == []

    def test_result_before_use_is_orphan(self):
        """Test a result only matches an earlier invocation."""
        messages = [tool_result_message("r", "t1"), tool_use_message("a", "t1")]
        analysis = analyze_tool_pairs(messages)
        assert len(analysis.orphaned_results) == 1
        assert len(analysis.orphaned_uses) == 1

    def test_multiple_uses_in_one_message(self):
        """Test parallel invocations in a single message."""
        messages = [
            ContextMessage(
                id="a",
                role=MessageRole.ASSISTANT,
                content=[ToolUsePart(id="t1", name="x"), ToolUsePart(id="t2", name="y")],
            ),
            tool_result_message("r1", "t1"),
            tool_result_message("r2", "t2"),
        ]
        analysis = analyze_tool_pairs(messages)
        assert len(analysis.pairs) == 2
        assert get_linked_indices(analysis, 1) == [0, 1, 2]


@pytest.mark.unit
class TestLinkedIndices:
    """Tests for linked index helpers."""

    def test_unpaired_message(self, conversation):
        """Test messages outside pairs have no links."""
        analysis = analyze_tool_pairs(conversation)
        assert get_linked_indices(analysis, 1) == []
        assert not are_in_same_tool_pair(analysis, 1, 1)

    def test_same_pair(self, conversation):
        """Test both halves of a pair are linked."""
        analysis = analyze_tool_pairs(conversation)
        assert get_linked_indices(analysis, 3) == [2, 3]
        assert are_in_same_tool_pair(analysis, 2, 3)
        assert are_in_same_tool_pair(analysis, 2, 2)
        assert not are_in_same_tool_pair(analysis, 2, 4)

    def test_transitive_links(self):
        """Test one result message answering two invocation messages."""
        messages = [
            tool_use_message("a", "t1"),
            tool_use_message("b", "t2"),
            ContextMessage(
                id="c",
                role=MessageRole.USER,
                content=[
                    ToolResultPart(tool_use_id="t1", content="1"),
                    ToolResultPart(tool_use_id="t2", content="2"),
                ],
            ),
        ]
        analysis = analyze_tool_pairs(messages)
        assert get_linked_indices(analysis, 0) == [0, 1, 2]


@pytest.mark.unit
class TestBlockExtraction:
    """Tests for block extraction helpers."""

    def test_plain_text_has_no_blocks(self):
        """Test string content has no tool parts."""
        message = text_message("m")
        assert extract_tool_use_blocks(message) == []
        assert extract_tool_result_blocks(message) == []
        assert not has_tool_blocks(message)

    def test_extracts_indices(self):
        """Test block indices are reported."""
        message = tool_use_message("m", "t1")
        assert [i for i, _ in extract_tool_use_blocks(message)] == [1]
        assert has_tool_blocks(message)
