"""
Unit tests for checkpoint module.

Tests cover:
- CheckpointManager create/get/list/latest
- LRU eviction bound
- rollback() restore and later-checkpoint removal
- Auto-checkpoint interval
- Checkpoint serialization
"""

import pytest

from src.domain.exceptions.context import CheckpointNotFoundError
from src.infrastructure.agent.context.checkpoint import (
    PRE_COMPRESSION_REASON,
    Checkpoint,
    CheckpointManager,
    create_pre_compression_checkpoint,
)
from src.tests.unit.agent.context.test_helper import FakeClock, text_message


def _messages(count):
    return [text_message(f"m{i}", f"message {i}") for i in range(count)]


@pytest.mark.unit
class TestCheckpointManager:
    """Tests for CheckpointManager."""

    def test_create_deep_copies(self):
        """Test later edits do not leak into the checkpoint."""
        manager = CheckpointManager(clock=FakeClock(1.5))
        messages = _messages(2)
        checkpoint = manager.create(messages, label="before", reason="test", token_count=42)
        messages[0].content = "edited"
        assert checkpoint.messages[0].content == "message 0"
        assert checkpoint.id == "chk_1500_1"
        assert checkpoint.token_count == 42
        assert manager.latest() is checkpoint

    def test_bounded_with_lru_eviction(self):
        """Test the least recently used checkpoint is evicted."""
        manager = CheckpointManager(max_checkpoints=2, clock=FakeClock())
        first = manager.create(_messages(1))
        second = manager.create(_messages(1))
        manager.get(first.id)
        third = manager.create(_messages(1))
        assert len(manager) == 2
        assert manager.get(second.id) is None
        assert [c.id for c in manager.list()] == [third.id, first.id]

    def test_rollback_restores_copy_and_drops_later(self):
        """Test rollback returns independent messages and prunes newer checkpoints."""
        manager = CheckpointManager(clock=FakeClock())
        first = manager.create(_messages(2))
        manager.create(_messages(4))
        result = manager.rollback(first.id, _messages(6))
        assert [m.id for m in result.messages] == ["m0", "m1"]
        assert result.removed_checkpoints == 1
        assert result.discarded_messages == 4
        assert len(manager) == 1
        result.messages[0].content = "changed"
        assert first.messages[0].content == "message 0"

    def test_rollback_unknown_raises(self):
        """Test unknown ids raise CheckpointNotFoundError."""
        manager = CheckpointManager()
        with pytest.raises(CheckpointNotFoundError):
            manager.rollback("missing", [])

    def test_should_auto_checkpoint(self):
        """Test the minimum interval between automatic checkpoints."""
        clock = FakeClock(10_000.0)
        manager = CheckpointManager(min_checkpoint_interval=60, clock=clock)
        assert manager.should_auto_checkpoint()
        manager.create(_messages(1))
        assert not manager.should_auto_checkpoint()
        clock.advance(60)
        assert manager.should_auto_checkpoint()
        assert not CheckpointManager(auto_checkpoint=False).should_auto_checkpoint()

    def test_clear(self):
        """Test clear() empties the store."""
        manager = CheckpointManager()
        manager.create(_messages(1))
        manager.clear()
        assert manager.latest() is None
        assert manager.list() == []

    def test_pre_compression_checkpoint(self):
        """Test helper labels the checkpoint."""
        manager = CheckpointManager()
        checkpoint = create_pre_compression_checkpoint(manager, _messages(1), token_count=9)
        assert checkpoint.reason == PRE_COMPRESSION_REASON
        assert checkpoint.label == "Pre-compression backup"
        assert checkpoint.token_count == 9


@pytest.mark.unit
def test_checkpoint_dict_round_trip():
    """Test dict form rebuilds an equal checkpoint."""
    checkpoint = Checkpoint(
        id="chk_1", messages=tuple(_messages(2)), created_at=3.0, token_count=7, label="x"
    )
    assert Checkpoint.from_dict(checkpoint.to_dict()) == checkpoint
