"""
Unit tests for cross-session inheritance.

Tests cover:
- Saving summaries filtered by inherit types
- last_session resolution with project matching
- project_context resolution
- Message formatting
- Index bounds, cleanup and failure handling
"""

import pytest

from src.domain.exceptions.context import StorageUnavailableError
from src.domain.model.context.message import MessageRole
from src.infrastructure.agent.context.improvements.cross_session_inheritance import (
    INDEX_KEY,
    INHERITED_HEADING,
    MAX_INDEXED_SESSIONS,
    PROJECT_CONTEXT_KEY,
    CrossSessionInheritanceResolver,
    create_cross_session_inheritance_resolver,
    session_key,
)
from src.infrastructure.agent.context.improvements.types import (
    InheritedSummary,
    SessionInheritanceConfig,
)

DAY = 24 * 60 * 60


def _summary(summary_id, summary_type, content=None, session="s1"):
    return InheritedSummary(
        id=summary_id,
        content=content or f"{summary_type} content {summary_id}",
        original_session=session,
        created_at=1.0,
        type=summary_type,
    )


def _resolver(storage, clock, **overrides):
    if "inherit_types" in overrides:
        overrides["inherit_types"] = tuple(overrides["inherit_types"])
    return CrossSessionInheritanceResolver(
        SessionInheritanceConfig(**overrides), storage=storage, clock=clock
    )


@pytest.mark.unit
class TestSaveSummaries:
    """Tests for save_summaries()."""

    @pytest.mark.asyncio
    async def test_filters_by_type(self, storage, clock):
        """Test only configured summary types are stored."""
        resolver = _resolver(storage, clock)
        saved = await resolver.save_summaries(
            "s1", [_summary("a", "full"), _summary("b", "code_changes"), _summary("c", "decisions")]
        )
        assert saved
        inherited = await _resolver(storage, clock).resolve_inheritance()
        assert [s.id for s in inherited.summaries] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_nothing_matching(self, storage, clock):
        """Test a save with no matching summaries is skipped."""
        resolver = _resolver(storage, clock)
        assert not await resolver.save_summaries("s1", [_summary("x", "code_changes")])
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_disabled_or_no_storage(self, storage, clock):
        """Test disabled resolver and missing storage do nothing."""
        assert not await _resolver(storage, clock, enabled=False).save_summaries(
            "s1", [_summary("a", "full")]
        )
        assert not await CrossSessionInheritanceResolver().save_summaries(
            "s1", [_summary("a", "full")]
        )
        assert await CrossSessionInheritanceResolver().resolve_inheritance() is None

    @pytest.mark.asyncio
    async def test_index_bounded(self, storage, clock):
        """Test the index keeps the newest sessions and drops old files."""
        resolver = _resolver(storage, clock)
        for i in range(MAX_INDEXED_SESSIONS + 2):
            clock.advance(1)
            await resolver.save_summaries(f"s{i}", [_summary("a", "full")])
        index = await _resolver(storage, clock).load_index()
        assert len(index["sessions"]) == MAX_INDEXED_SESSIONS
        assert index["sessions"][0]["session_id"] == f"s{MAX_INDEXED_SESSIONS + 1}"
        assert session_key("s0") not in storage.data
        assert session_key("s1") not in storage.data
        assert session_key("s2") in storage.data

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, storage, clock):
        """Test write failures surface to the caller."""
        storage.fail = True
        with pytest.raises(StorageUnavailableError):
            await _resolver(storage, clock).save_summaries("s1", [_summary("a", "full")])


@pytest.mark.unit
class TestResolveLastSession:
    """Tests for last_session resolution."""

    @pytest.mark.asyncio
    async def test_prefers_project_match(self, storage, clock):
        """Test the newest session of the same project wins."""
        resolver = _resolver(storage, clock)
        await resolver.save_summaries("s1", [_summary("a", "full")], project_path="/proj/a")
        clock.advance(10)
        await resolver.save_summaries("s2", [_summary("b", "full")], project_path="/proj/b")

        matched = await resolver.resolve_inheritance("/proj/a")
        assert matched.source_session_id == "s1"
        latest = await resolver.resolve_inheritance()
        assert latest.source_session_id == "s2"
        assert latest.inherited_at == clock.now
        unknown = await resolver.resolve_inheritance("/proj/other")
        assert unknown.source_session_id == "s2"

    @pytest.mark.asyncio
    async def test_max_inherited(self, storage, clock):
        """Test the number of inherited summaries is capped."""
        resolver = _resolver(storage, clock, max_inherited_summaries=2)
        await resolver.save_summaries("s1", [_summary(str(i), "task") for i in range(5)])
        inherited = await resolver.resolve_inheritance()
        assert len(inherited.summaries) == 2

    @pytest.mark.asyncio
    async def test_empty_storage(self, storage, clock):
        """Test nothing saved resolves to None."""
        assert await _resolver(storage, clock).resolve_inheritance() is None

    @pytest.mark.asyncio
    async def test_corrupt_index(self, storage, clock):
        """Test a corrupt index degrades to None and is rebuilt on save."""
        storage.data[INDEX_KEY] = b"[1, 2"
        resolver = _resolver(storage, clock)
        assert await resolver.resolve_inheritance() is None
        assert await resolver.save_summaries("s1", [_summary("a", "full")])
        assert (await resolver.resolve_inheritance()).source_session_id == "s1"

    @pytest.mark.asyncio
    async def test_storage_offline(self, storage, clock):
        """Test read failures degrade to None."""
        storage.fail = True
        assert await _resolver(storage, clock).resolve_inheritance() is None

    @pytest.mark.asyncio
    async def test_manual_source(self, storage, clock):
        """Test manual source never resolves automatically."""
        await _resolver(storage, clock).save_summaries("s1", [_summary("a", "full")])
        assert await _resolver(storage, clock, source="manual").resolve_inheritance() is None


@pytest.mark.unit
class TestResolveProjectContext:
    """Tests for project_context resolution."""

    @pytest.mark.asyncio
    async def test_decisions_and_tasks(self, storage, clock):
        """Test accumulated decisions precede task summaries."""
        writer = _resolver(storage, clock)
        await writer.save_summaries(
            "s1",
            [_summary("t1", "task"), _summary("d1", "decisions", "Use orjson")],
            project_path="/proj",
        )
        await writer.save_summaries(
            "s2",
            [_summary("t2", "task"), _summary("d2", "decisions", "Keep zlib")],
            project_path="/proj",
        )
        reader = _resolver(storage, clock, source="project_context")
        inherited = await reader.resolve_inheritance("/proj")
        assert inherited.source_session_id == "project-context"
        assert inherited.summaries[0].type == "decisions"
        assert inherited.summaries[0].content == "## Project Decisions\n\nUse orjson\n\nKeep zlib"
        assert [s.id for s in inherited.summaries[1:]] == ["t1", "t2"]
        assert inherited.metadata["project_path"] == "/proj"

    @pytest.mark.asyncio
    async def test_requires_task_summaries(self, storage, clock):
        """Test decisions alone are not enough."""
        await _resolver(storage, clock).save_summaries(
            "s1", [_summary("d1", "decisions")], project_path="/proj"
        )
        reader = _resolver(storage, clock, source="project_context")
        assert await reader.resolve_inheritance("/proj") is None
        assert await reader.resolve_inheritance() is None

    @pytest.mark.asyncio
    async def test_not_updated_without_decisions_type(self, storage, clock):
        """Test project context is only kept when decisions are inherited."""
        resolver = _resolver(storage, clock, inherit_types=["summary"])
        await resolver.save_summaries("s1", [_summary("t1", "task")], project_path="/proj")
        assert PROJECT_CONTEXT_KEY not in storage.data


@pytest.mark.unit
class TestFormatting:
    """Tests for format_as_message() and index helpers."""

    @pytest.mark.asyncio
    async def test_format_as_message(self, storage, clock):
        """Test the rendered system message."""
        resolver = _resolver(storage, clock)
        await resolver.save_summaries(
            "s1",
            [
                _summary("a", "full", "Built the parser"),
                _summary("b", "decisions", "Use orjson"),
            ],
        )
        message = resolver.format_as_message(await resolver.resolve_inheritance())
        assert message.id == "inherited-s1"
        assert message.role == MessageRole.SYSTEM
        assert message.metadata == {"is_inherited": True, "source_session": "s1"}
        assert message.content.startswith(INHERITED_HEADING)
        assert "_Source: Session s1_" in message.content
        assert "### Session Summary\n\nBuilt the parser" in message.content
        assert "### Key Decisions\n\nUse orjson" in message.content

    @pytest.mark.asyncio
    async def test_last_session_info(self, storage, clock):
        """Test the newest indexed session is reported."""
        resolver = _resolver(storage, clock)
        assert resolver.get_last_session_info() is None
        await resolver.save_summaries("s1", [_summary("a", "full")])
        assert resolver.get_last_session_info() == ("s1", clock.now)

    def test_session_key_sanitized(self):
        """Test unsafe characters are replaced and a digest of the raw id appended."""
        key = session_key("a/b c")
        assert key.startswith("session-a_b_c-")
        assert key.endswith(".json")
        assert len(key) == len("session-a_b_c-.json") + 8
        assert session_key("a/b c") == key

    def test_session_key_distinct_for_colliding_ids(self):
        """Test ids that sanitize to the same text get different keys."""
        assert session_key("a/b") != session_key("a_b")
        assert session_key("a/b") != session_key("a b")

    @pytest.mark.asyncio
    async def test_sessions_with_similar_ids_kept_apart(self, storage, clock):
        """Test saving one session does not overwrite another with a similar id."""
        resolver = _resolver(storage, clock)
        await resolver.save_summaries("a/b", [_summary("x", "full", "first session")])
        clock.advance(1)
        await resolver.save_summaries("a_b", [_summary("y", "full", "second session")])

        assert b"first session" in storage.data[session_key("a/b")]
        assert b"second session" in storage.data[session_key("a_b")]
        index = await _resolver(storage, clock).load_index()
        assert [s["session_id"] for s in index["sessions"]] == ["a_b", "a/b"]

    def test_factory_tuples_inherit_types(self):
        """Test list overrides become tuples."""
        resolver = create_cross_session_inheritance_resolver(inherit_types=["summary"])
        assert resolver.config.inherit_types == ("summary",)


@pytest.mark.unit
class TestCleanup:
    """Tests for cleanup()."""

    @pytest.mark.asyncio
    async def test_removes_old_sessions(self, storage, clock):
        """Test sessions older than max age are deleted."""
        resolver = _resolver(storage, clock)
        await resolver.save_summaries("old", [_summary("a", "full")])
        clock.advance(8 * DAY)
        await resolver.save_summaries("new", [_summary("b", "full")])
        assert await resolver.cleanup() == 1
        assert session_key("old") not in storage.data
        index = await _resolver(storage, clock).load_index()
        assert [s["session_id"] for s in index["sessions"]] == ["new"]
        assert await resolver.cleanup() == 0

    @pytest.mark.asyncio
    async def test_no_storage(self):
        """Test cleanup without storage."""
        assert await CrossSessionInheritanceResolver().cleanup() == 0
