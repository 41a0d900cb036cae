"""
Unit tests for compaction statistics.

Tests cover:
- record() totals and bounded history
- Cascade detection
- Compression efficiency
- persist()/load() through a storage port, including corrupt entries
- Cancellation and JSON helpers
"""

import asyncio

import orjson
import pytest

from src.domain.exceptions.context import CorruptEntryError, OperationCancelledError
from src.infrastructure.agent.context.improvements.compaction_stats_tracker import (
    STATS_KEY,
    CompactionStatsTracker,
    create_compaction_stats_tracker,
)
from src.infrastructure.agent.context.improvements.storage_io import read_json, write_json
from src.infrastructure.agent.context.improvements.types import CompactionStatsConfig
from src.tests.unit.agent.context.test_helper import text_message


@pytest.mark.unit
class TestRecord:
    """Tests for recording compactions."""

    def test_totals(self, clock):
        """Test counters and token totals accumulate."""
        tracker = CompactionStatsTracker(session_id="s1", clock=clock)
        entry = tracker.record(5000, 500, message_count=10)
        tracker.record(3000, 1000, message_count=4, is_cascade=True)
        stats = tracker.get_stats()
        assert entry.compaction_id == f"cmp_{int(clock.now * 1000)}_1"
        assert stats.session_id == "s1"
        assert stats.total_compactions == 2
        assert stats.session_compactions == 2
        assert stats.cascade_compactions == 1
        assert stats.total_original_tokens == 8000
        assert stats.total_compressed_tokens == 1500
        assert tracker.get_compression_efficiency() == pytest.approx(1 - 1500 / 8000)

    def test_disabled(self):
        """Test nothing is recorded when disabled."""
        tracker = create_compaction_stats_tracker(enabled=False)
        assert tracker.record(100, 10, 2) is None
        assert tracker.get_stats().total_compactions == 0

    def test_history_bounded_newest_first(self):
        """Test the history keeps the newest entries."""
        tracker = create_compaction_stats_tracker(max_history_entries=3)
        for i in range(5):
            tracker.record(100 * (i + 1), 10, 1, timestamp=float(i))
        history = tracker.get_history()
        assert [entry.timestamp for entry in history] == [4.0, 3.0, 2.0]
        assert len(tracker.get_history(limit=1)) == 1
        assert tracker.get_stats().total_compactions == 5

    def test_efficiency_without_compactions(self):
        """Test efficiency is zero with no data."""
        assert CompactionStatsTracker().get_compression_efficiency() == 0.0

    def test_set_session_id_resets_session_count(self):
        """Test per-session counter restarts."""
        tracker = CompactionStatsTracker()
        tracker.record(10, 1, 1)
        tracker.set_session_id("s2")
        stats = tracker.get_stats()
        assert stats.session_compactions == 0
        assert stats.total_compactions == 1

    def test_reset(self):
        """Test reset() clears counters and tracked ids."""
        tracker = CompactionStatsTracker()
        tracker.record(10, 1, 1)
        tracker.track_compacted_messages(["m1"])
        tracker.reset()
        assert tracker.get_stats().total_compactions == 0
        assert not tracker.is_cascade_compaction([text_message("m1")])


@pytest.mark.unit
class TestCascadeDetection:
    """Tests for is_cascade_compaction()."""

    def test_plain_messages(self):
        """Test plain messages are not a cascade."""
        assert not CompactionStatsTracker().is_cascade_compaction([text_message("m1")])

    def test_summary_or_condense_id(self):
        """Test summaries and condensed messages make a cascade."""
        tracker = CompactionStatsTracker()
        assert tracker.is_cascade_compaction([text_message("s", is_summary=True)])
        assert tracker.is_cascade_compaction([text_message("c", condense_id="c1")])

    def test_tracked_ids(self):
        """Test ids from earlier compactions make a cascade."""
        tracker = CompactionStatsTracker()
        tracker.track_compacted_messages(["m1", "m2"], summary_id="sum1")
        assert tracker.is_cascade_compaction([text_message("sum1")])
        assert tracker.is_cascade_compaction([text_message("m2")])


@pytest.mark.unit
class TestPersistence:
    """Tests for persist() and load()."""

    @pytest.mark.asyncio
    async def test_persist_and_load(self, storage, clock):
        """Test totals survive a restart while the session count does not."""
        tracker = CompactionStatsTracker(storage=storage, session_id="s1", clock=clock)
        tracker.record(5000, 500, 10, is_cascade=True)
        assert await tracker.persist() is True
        assert STATS_KEY in storage.data

        restored = CompactionStatsTracker(storage=storage, clock=clock)
        assert await restored.load() is True
        stats = restored.get_stats()
        assert stats.total_compactions == 1
        assert stats.cascade_compactions == 1
        assert stats.session_compactions == 0
        assert stats.total_original_tokens == 5000
        assert stats.history[0].original_tokens == 5000

    @pytest.mark.asyncio
    async def test_load_trims_history(self, storage):
        """Test loaded history respects the current bound."""
        tracker = CompactionStatsTracker(storage=storage)
        for i in range(4):
            tracker.record(10, 1, 1, timestamp=float(i))
        await tracker.persist()
        small = CompactionStatsTracker(CompactionStatsConfig(max_history_entries=2), storage)
        await small.load()
        assert [e.timestamp for e in small.get_history()] == [3.0, 2.0]

    @pytest.mark.asyncio
    async def test_load_missing(self, storage):
        """Test a missing entry loads nothing."""
        assert await CompactionStatsTracker(storage=storage).load() is False

    @pytest.mark.asyncio
    async def test_load_corrupt_resets(self, storage):
        """Test corrupt data is discarded."""
        storage.data[STATS_KEY] = b"{not json"
        tracker = CompactionStatsTracker(storage=storage)
        tracker.record(10, 1, 1)
        assert await tracker.load() is False
        assert tracker.get_stats().total_compactions == 0

    @pytest.mark.asyncio
    async def test_load_missing_fields_resets(self, storage):
        """Test structurally invalid data is discarded."""
        storage.data[STATS_KEY] = orjson.dumps({"history": []})
        assert await CompactionStatsTracker(storage=storage).load() is False

    @pytest.mark.asyncio
    async def test_persist_disabled(self, storage):
        """Test persistence can be switched off."""
        tracker = create_compaction_stats_tracker(storage, persist=False)
        assert await tracker.persist() is False
        assert await CompactionStatsTracker().persist() is False
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_persist_cancelled(self, storage):
        """Test a set abort signal cancels before writing."""
        signal = asyncio.Event()
        signal.set()
        with pytest.raises(OperationCancelledError):
            await CompactionStatsTracker(storage=storage).persist(signal)
        assert storage.data == {}


@pytest.mark.unit
class TestStorageIO:
    """Tests for JSON storage helpers."""

    @pytest.mark.asyncio
    async def test_round_trip(self, storage):
        """Test JSON values are written and read back."""
        await write_json(storage, "k.json", {"a": [1, 2]})
        assert await read_json(storage, "k.json") == {"a": [1, 2]}
        assert await read_json(storage, "missing.json") is None

    @pytest.mark.asyncio
    async def test_corrupt(self, storage):
        """Test invalid JSON raises CorruptEntryError with the key."""
        storage.data["bad.json"] = b"\xff"
        with pytest.raises(CorruptEntryError) as exc_info:
            await read_json(storage, "bad.json")
        assert exc_info.value.key == "bad.json"
