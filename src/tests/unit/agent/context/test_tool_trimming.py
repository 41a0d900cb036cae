"""
Unit tests for tool output trimming.

Tests cover:
- trim_tool_result() string and list content
- prune_tool_outputs() protected tools and accounting
- Input messages are not mutated
- Compaction timestamps and statistics
"""

import pytest

from src.domain.model.context.message import ContextMessage, MessageRole, TextPart, ToolResultPart
from src.infrastructure.agent.context.tool_trimming import (
    DEFAULT_TRUNCATION_MARKER,
    build_tool_name_map,
    find_compacted_blocks,
    get_compaction_stats,
    is_protected_tool,
    mark_as_compacted,
    prune_tool_outputs,
    trim_tool_result,
)
from src.tests.unit.agent.context.test_helper import (
    text_message,
    tool_result_message,
    tool_use_message,
)


@pytest.mark.unit
class TestTrimToolResult:
    """Tests for trim_tool_result()."""

    def test_short_result_untouched(self):
        """Test results within the limit are returned as is."""
        part = ToolResultPart(tool_use_id="t", content="short")
        trimmed, removed = trim_tool_result(part, 100)
        assert trimmed is part
        assert removed == 0

    def test_string_content_trimmed_to_limit(self):
        """Test trimmed output length equals the limit, marker included."""
        part = ToolResultPart(tool_use_id="t", content="x" * 500)
        trimmed, removed = trim_tool_result(part, 100)
        assert len(trimmed.text) == 100
        assert trimmed.text.endswith(DEFAULT_TRUNCATION_MARKER)
        assert removed == 400
        assert trimmed.compacted_at is None

    def test_list_content_trimmed(self):
        """Test text part lists are cut at the limit."""
        part = ToolResultPart(
            tool_use_id="t", content=[TextPart("a" * 60), TextPart("b" * 60), TextPart("c")]
        )
        trimmed, removed = trim_tool_result(part, 100, marker="!")
        assert trimmed.text == "a" * 60 + "b" * 39 + "!"
        assert removed == 21

    def test_track_compaction(self):
        """Test compacted_at is stamped when tracking."""
        part = ToolResultPart(tool_use_id="t", content="x" * 50)
        trimmed, _ = trim_tool_result(part, 10, track_compaction=True)
        assert trimmed.compacted_at is not None


@pytest.mark.unit
class TestPruneToolOutputs:
    """Tests for prune_tool_outputs()."""

    def test_trims_and_counts(self):
        """Test oversized results are trimmed with accounting."""
        messages = [
            tool_use_message("a", "t1", name="bash"),
            tool_result_message("r", "t1", output="y" * 2000, tokens=500),
        ]
        result = prune_tool_outputs(messages, max_output_chars=1000)
        assert result.trimmed_count == 1
        assert result.chars_removed == 1000
        assert result.tokens_saved == 250
        assert result.trimmed_tools == ["bash"]
        assert result.messages[1].tokens is None
        assert result.messages[0] is messages[0]

    def test_input_not_mutated(self):
        """Test the original message keeps its content."""
        original = tool_result_message("r", "t1", output="y" * 2000)
        messages = [tool_use_message("a", "t1"), original]
        prune_tool_outputs(messages, max_output_chars=100)
        assert len(messages[1].content[0].text) == 2000

    def test_protected_tool_untouched(self):
        """Test protected tool outputs are kept whole, case-insensitive."""
        messages = [
            tool_use_message("a", "t1", name="Memory_Search"),
            tool_result_message("r", "t1", output="z" * 5000),
        ]
        result = prune_tool_outputs(messages, max_output_chars=100)
        assert result.trimmed_count == 0
        assert result.messages[1] is messages[1]

    def test_unknown_tool_name(self):
        """Test results without a visible invocation are still trimmed."""
        messages = [tool_result_message("r", "ghost", output="z" * 500)]
        result = prune_tool_outputs(messages, max_output_chars=100)
        assert result.trimmed_tools == ["unknown"]

    def test_plain_text_passthrough(self):
        """Test string messages pass through untouched."""
        message = text_message("m", "x" * 50_000)
        result = prune_tool_outputs([message], max_output_chars=10)
        assert result.messages == [message]


@pytest.mark.unit
class TestHelpers:
    """Tests for helper functions."""

    def test_is_protected_tool(self):
        """Test case-insensitive protection check."""
        assert is_protected_tool("SKILL", ["skill"])
        assert not is_protected_tool("bash", ["skill"])

    def test_build_tool_name_map(self, conversation):
        """Test invocation ids map to names."""
        assert build_tool_name_map(conversation) == {"call_1": "read_file"}
        assert build_tool_name_map(
            [ContextMessage(id="x", role=MessageRole.USER, content="hi")]
        ) == {}


def _result(message_id, tool_id, compacted_at=None):
    return ContextMessage(
        id=message_id,
        role=MessageRole.USER,
        content=[ToolResultPart(tool_use_id=tool_id, content="out", compacted_at=compacted_at)],
    )


@pytest.mark.unit
class TestCompactionTimestamps:
    """Tests for compaction timestamp helpers."""

    def test_mark_as_compacted(self):
        """Test marking returns a stamped copy."""
        part = ToolResultPart(tool_use_id="t", content="out")
        marked = mark_as_compacted(part, 1000.0)
        assert marked.compacted_at == 1000.0
        assert marked.content == "out"
        assert part.compacted_at is None

    def test_mark_defaults_to_now(self):
        """Test the current time is used without a timestamp."""
        assert mark_as_compacted(ToolResultPart(tool_use_id="t")).compacted_at > 0

    def test_find_compacted_blocks(self):
        """Test only stamped tool results are located."""
        messages = [
            text_message("u", "hi"),
            _result("r1", "t1"),
            ContextMessage(
                id="r2",
                role=MessageRole.USER,
                content=[
                    TextPart(text="two results"),
                    ToolResultPart(tool_use_id="t2", content="a", compacted_at=50.0),
                    ToolResultPart(tool_use_id="t3", content="b"),
                ],
            ),
        ]
        located = find_compacted_blocks(messages)
        assert len(located) == 1
        assert (located[0].message_index, located[0].block_index) == (2, 1)
        assert located[0].tool_id == "t2"
        assert located[0].compacted_at == 50.0

    def test_compaction_stats(self):
        """Test counts, rate and ages."""
        messages = [
            _result("r1", "t1", compacted_at=100.0),
            _result("r2", "t2", compacted_at=160.0),
            _result("r3", "t3"),
            _result("r4", "t4"),
            text_message("u", "hi"),
        ]
        stats = get_compaction_stats(messages, now=200.0)
        assert stats.total_tool_results == 4
        assert stats.compacted_count == 2
        assert stats.compaction_rate == 0.5
        assert stats.oldest_compaction == 100.0
        assert stats.newest_compaction == 160.0
        assert stats.average_age == 70.0

    def test_compaction_stats_none_compacted(self):
        """Test empty stats when nothing was compacted."""
        stats = get_compaction_stats([_result("r1", "t1")], now=200.0)
        assert stats.total_tool_results == 1
        assert stats.compacted_count == 0
        assert stats.compaction_rate == 0.0
        assert stats.average_age is None

    def test_prune_stamps_trimmed_results(self):
        """Test pruning with tracking makes trimmed results findable."""
        messages = [
            tool_use_message("a", "t1", name="bash"),
            tool_result_message("r", "t1", output="y" * 500),
        ]
        result = prune_tool_outputs(messages, max_output_chars=100, track_compaction=True)
        assert [b.tool_id for b in find_compacted_blocks(result.messages)] == ["t1"]
        assert find_compacted_blocks(messages) == []
