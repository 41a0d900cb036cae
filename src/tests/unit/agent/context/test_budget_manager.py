"""
Unit tests for ContextBudgetManager.

Tests cover:
- State classification and required actions
- Tool output pruning at warning level
- Checkpoint, truncation and compression at critical level
- Overflow recovery strategies
- Integration with the improvements manager
"""

import pytest

from src.domain.exceptions.context import CheckpointNotFoundError
from src.domain.model.context.message import ContextMessage, MessageRole
from src.infrastructure.agent.context.budget_manager import (
    CompressionOutcome,
    ContextBudgetManager,
    ContextState,
    RecoveryStrategy,
    RecoveryType,
    estimate_required_actions,
)
from src.infrastructure.agent.context.checkpoint import PRE_COMPRESSION_REASON
from src.infrastructure.agent.context.config import create_config
from src.infrastructure.agent.context.improvements.manager import ContextImprovementsManager
from src.infrastructure.agent.context.threshold import ThresholdConfig, ThresholdRegistry
from src.infrastructure.agent.context.tool_block_repair import has_tool_block_issues
from src.tests.unit.agent.context.test_helper import (
    text_message,
    tool_result_message,
    tool_use_message,
)

SMALL_WINDOW = create_config(max_context_window=1000, output_reserve=0, system_reserve=0)


def _turns(count, tokens=100):
    """A system prompt followed by alternating user and assistant turns."""
    messages = [text_message("m0", "system", role=MessageRole.SYSTEM, tokens=tokens)]
    for i in range(1, count):
        role = MessageRole.USER if i % 2 else MessageRole.ASSISTANT
        messages.append(text_message(f"m{i}", f"turn {i}", role=role, tokens=tokens))
    return messages


class FakeCompressor:
    """Replaces the condensed range with a 50 token summary."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def compress(self, messages, start, end):
        self.calls.append((start, end))
        if self.error:
            raise self.error
        condensed = messages[start:end]
        summary = ContextMessage(
            id="summary-1",
            role=MessageRole.ASSISTANT,
            content="Summary of earlier turns",
            tokens=50,
            is_summary=True,
            condense_id="c1",
        )
        return CompressionOutcome(
            summary=summary,
            compressed_message_ids=tuple(m.id for m in condensed),
            ratio=sum(m.tokens for m in condensed) / 50,
        )


def _manager(clock, config=SMALL_WINDOW, **kwargs):
    return ContextBudgetManager(config, clock=clock, **kwargs)


@pytest.mark.unit
class TestStates:
    """Tests for state classification."""

    def test_calculate_state(self, clock):
        """Test usage bands map to states."""
        manager = _manager(clock)
        assert manager.history_budget == 1000
        assert manager.calculate_state(700) == ContextState.HEALTHY
        assert manager.calculate_state(750) == ContextState.WARNING
        assert manager.calculate_state(850) == ContextState.CRITICAL
        assert manager.calculate_state(950) == ContextState.OVERFLOW

    def test_zero_budget(self, clock):
        """Test a config with no history budget."""
        config = create_config(max_context_window=100, output_reserve=100, system_reserve=0)
        manager = _manager(clock, config)
        assert manager.usage(0) == 0.0
        assert manager.calculate_state(1) == ContextState.OVERFLOW

    def test_model_thresholds(self, clock):
        """Test a model name resolves thresholds from the registry."""
        manager = _manager(clock, model="gemini-1.5-pro")
        assert manager.thresholds == ThresholdRegistry().resolve("gemini-1.5-pro")

    def test_estimate_required_actions(self, clock):
        """Test the action plan for each band."""
        thresholds = ThresholdConfig(warning=0.75, critical=0.85, overflow=0.95)
        assert estimate_required_actions(100, 1000, thresholds) == []
        assert estimate_required_actions(800, 1000, thresholds) == ["prune"]
        assert estimate_required_actions(900, 1000, thresholds) == [
            "prune",
            "checkpoint",
            "truncate",
            "compress",
        ]
        assert estimate_required_actions(990, 1000, thresholds)[-1] == "recovery"
        assert _manager(clock).estimate_required_actions(_turns(8)) == ["prune"]


@pytest.mark.unit
class TestManage:
    """Tests for manage()."""

    @pytest.mark.asyncio
    async def test_healthy_untouched(self, clock, conversation):
        """Test a healthy context passes through."""
        result = await _manager(clock).manage(conversation)
        assert result.state == ContextState.HEALTHY
        assert result.actions == []
        assert result.token_count == 700
        assert [m.id for m in result.messages] == [m.id for m in conversation]
        assert result.to_event_data() == {
            "state": "healthy",
            "token_count": 700,
            "budget_used": 0.7,
            "actions": [],
            "checkpoint_id": None,
            "message_count": 7,
        }

    @pytest.mark.asyncio
    async def test_warning_below_prune_minimum(self, clock):
        """Test small histories are not pruned."""
        result = await _manager(clock).manage(_turns(8))
        assert result.state == ContextState.WARNING
        assert result.actions == []

    @pytest.mark.asyncio
    async def test_prune_large_tool_output(self, clock):
        """Test an oversized tool result is trimmed at warning level."""
        config = create_config(max_context_window=30_000, output_reserve=0, system_reserve=0)
        messages = [
            text_message("u1", "Read the log"),
            tool_use_message("a1", "call_1", name="read_file"),
            tool_result_message("r1", "call_1", output="x" * 100_000),
            text_message("a2", "Read it", role=MessageRole.ASSISTANT),
        ]
        result = await _manager(clock, config).manage(messages)

        assert result.state == ContextState.HEALTHY
        assert result.actions[0] == "prune:1 tools trimmed"
        assert result.actions[1].startswith("prune:")
        assert len(result.messages[2].content[0].text) == 10_000
        assert result.checkpoint_id is None

    @pytest.mark.asyncio
    async def test_critical_truncates(self, clock):
        """Test critical usage checkpoints then truncates to the warning level."""
        manager = _manager(clock, compressor=FakeCompressor())
        result = await manager.manage(_turns(9))

        assert result.state == ContextState.HEALTHY
        assert result.token_count == 700
        assert result.actions == [
            f"checkpoint:{result.checkpoint_id}",
            "truncate:2 messages removed",
            "truncate:200 tokens saved",
        ]
        assert [m.id for m in result.messages] == ["m0", "m3", "m4", "m5", "m6", "m7", "m8"]
        checkpoint = manager.checkpoints.latest()
        assert checkpoint.id == result.checkpoint_id
        assert checkpoint.reason == PRE_COMPRESSION_REASON
        assert checkpoint.token_count == 900
        assert len(checkpoint.messages) == 9

    @pytest.mark.asyncio
    async def test_compress_when_truncation_insufficient(self, clock):
        """Test the middle is condensed when nothing can be evicted."""
        compressor = FakeCompressor()
        manager = _manager(clock, compressor=compressor, anchor_count=5)
        result = await manager.manage(_turns(9))

        assert compressor.calls == [(1, 6)]
        assert [m.id for m in result.messages] == ["m0", "summary-1", "m6", "m7", "m8"]
        assert result.token_count == 450
        assert result.state == ContextState.HEALTHY
        assert result.actions[1:] == [
            "compress:5 messages -> 1 summary",
            "compress:450 tokens saved (ratio: 10.00)",
        ]

    @pytest.mark.asyncio
    async def test_compression_failure(self, clock):
        """Test a failing compressor leaves messages unchanged."""
        compressor = FakeCompressor(error=RuntimeError("model unavailable"))
        manager = _manager(clock, compressor=compressor, anchor_count=5)
        result = await manager.manage(_turns(9))

        assert result.state == ContextState.CRITICAL
        assert len(result.messages) == 9
        assert result.actions[-1] == "compress:failed - model unavailable"

    @pytest.mark.asyncio
    async def test_auto_condense_disabled(self, clock):
        """Test the compressor is ignored when auto condense is off."""
        config = create_config(
            max_context_window=1000, output_reserve=0, system_reserve=0, use_auto_condense=False
        )
        compressor = FakeCompressor()
        manager = _manager(clock, config, compressor=compressor, anchor_count=5)
        result = await manager.manage(_turns(9))

        assert manager.compressor is None
        assert compressor.calls == []
        assert result.state == ContextState.CRITICAL

    @pytest.mark.asyncio
    async def test_does_not_mutate_input_list(self, clock):
        """Test the caller's list keeps its messages."""
        messages = _turns(9)
        await _manager(clock).manage(messages)
        assert len(messages) == 9


@pytest.mark.unit
class TestTruncationPolicy:
    """Tests for truncation_policy handling in manage()."""

    @staticmethod
    def _config(policy):
        return create_config(
            max_context_window=1000,
            output_reserve=0,
            system_reserve=0,
            truncation_policy=policy,
        )

    @pytest.mark.asyncio
    async def test_none_leaves_messages(self, clock):
        """Test policy none neither checkpoints, truncates nor condenses."""
        compressor = FakeCompressor()
        manager = _manager(clock, self._config("none"), compressor=compressor)
        result = await manager.manage(_turns(9))

        assert result.state == ContextState.CRITICAL
        assert len(result.messages) == 9
        assert result.actions == []
        assert result.checkpoint_id is None
        assert compressor.calls == []
        assert manager.checkpoints.latest() is None

    @pytest.mark.asyncio
    async def test_none_skips_overflow_recovery(self, clock):
        """Test policy none leaves an overflowing context for the caller."""
        result = await _manager(clock, self._config("none")).manage(_turns(11))
        assert result.state == ContextState.OVERFLOW
        assert len(result.messages) == 11

    @pytest.mark.asyncio
    async def test_sliding_window_target(self, clock):
        """Test the default policy truncates down to the warning threshold."""
        result = await _manager(clock, self._config("sliding-window")).manage(
            _turns(17, tokens=50)
        )
        assert result.token_count == 750
        assert result.state == ContextState.WARNING

    @pytest.mark.asyncio
    async def test_aggressive_target(self, clock):
        """Test policy aggressive truncates down to the recovery target."""
        result = await _manager(clock, self._config("aggressive")).manage(
            _turns(17, tokens=50)
        )
        assert result.token_count == 700
        assert result.state == ContextState.HEALTHY
        assert result.actions[1:] == [
            "truncate:3 messages removed",
            "truncate:150 tokens saved",
        ]

    @pytest.mark.asyncio
    async def test_summary_condenses_first(self, clock):
        """Test policy summary condenses before any message is evicted."""
        compressor = FakeCompressor()
        manager = _manager(clock, self._config("summary"), compressor=compressor)
        result = await manager.manage(_turns(9))

        assert compressor.calls == [(1, 6)]
        assert [m.id for m in result.messages] == ["m0", "summary-1", "m6", "m7", "m8"]
        assert result.state == ContextState.HEALTHY
        assert result.actions[1:] == [
            "compress:5 messages -> 1 summary",
            "compress:450 tokens saved (ratio: 10.00)",
        ]

    @pytest.mark.asyncio
    async def test_summary_without_compressor_truncates(self, clock):
        """Test policy summary falls back to truncation with no compressor."""
        result = await _manager(clock, self._config("summary")).manage(_turns(9))
        assert result.token_count == 700
        assert result.state == ContextState.HEALTHY


@pytest.mark.unit
class TestRecovery:
    """Tests for overflow recovery."""

    @pytest.mark.asyncio
    async def test_emergency_clear(self, clock):
        """Test an unreducible overflow above 100% keeps system and recent messages."""
        manager = _manager(clock, anchor_count=6)
        result = await manager.manage(_turns(11))

        assert result.state == ContextState.HEALTHY
        assert [m.id for m in result.messages] == ["m0", "m6", "m7", "m8", "m9", "m10"]
        assert result.actions[-2:] == [
            "recovery:emergency clear",
            "recovery:kept 1 system + 5 recent",
        ]

    @pytest.mark.asyncio
    async def test_aggressive_truncate(self, clock):
        """Test a locked tool pair is broken up by aggressive truncation."""
        messages = [
            tool_use_message("a1", "call_1", tokens=100),
            tool_result_message("r1", "call_1", tokens=860),
            text_message("u1", "next", tokens=20),
            text_message("a2", "done", role=MessageRole.ASSISTANT, tokens=20),
        ]
        manager = _manager(clock)
        result = await manager.manage(messages)

        assert [m.id for m in result.messages] == ["a1", "a2"]
        assert result.messages[0].text == "calling tool"
        assert not has_tool_block_issues(result.messages)
        assert result.token_count == manager.count_tokens(result.messages)
        assert result.state == ContextState.HEALTHY
        assert result.actions[1:] == [
            "truncate:1 messages removed",
            "truncate:20 tokens saved",
            "recovery:aggressive truncate to 70%",
            "recovery:removed 1 messages",
            "recovery:repaired 1 tool blocks",
        ]

    def test_emergency_clear_repairs_cut_tool_pair(self, clock):
        """Test a result whose invocation was cleared gets a placeholder invocation."""
        messages = [
            text_message("sys", "system", role=MessageRole.SYSTEM, tokens=100),
            text_message("u1", "read it", tokens=100),
            tool_use_message("a1", "call_1", tokens=100),
            tool_result_message("r1", "call_1", tokens=100),
            text_message("a2", "read", role=MessageRole.ASSISTANT, tokens=100),
            text_message("u2", "next", tokens=100),
            text_message("a3", "ok", role=MessageRole.ASSISTANT, tokens=100),
            text_message("u3", "thanks", tokens=100),
        ]
        actions = []
        repaired = _manager(clock)._recover(
            messages, RecoveryStrategy(type=RecoveryType.EMERGENCY_CLEAR), actions
        )

        assert repaired[0].id == "sys"
        assert repaired[1].id.startswith("placeholder-")
        assert [m.id for m in repaired[2:]] == ["r1", "a2", "u2", "a3", "u3"]
        assert not has_tool_block_issues(repaired)
        assert actions == [
            "recovery:emergency clear",
            "recovery:kept 1 system + 5 recent",
            "recovery:repaired 1 tool blocks",
        ]

    def test_strategy_prefers_recent_checkpoint(self, clock, conversation):
        """Test a young checkpoint under the overflow threshold is used."""
        manager = _manager(clock)
        checkpoint_id = manager.create_checkpoint(conversation, label="safe")
        strategy = manager.get_recovery_strategy(_turns(10))
        assert strategy.type == RecoveryType.ROLLBACK
        assert strategy.checkpoint_id == checkpoint_id

    def test_strategy_ignores_old_checkpoint(self, clock, conversation):
        """Test checkpoints older than ten minutes are not rolled back to."""
        manager = _manager(clock)
        manager.create_checkpoint(conversation)
        clock.advance(601)
        assert manager.get_recovery_strategy(_turns(10)).type == RecoveryType.AGGRESSIVE_TRUNCATE
        assert manager.get_recovery_strategy(_turns(11)).type == RecoveryType.EMERGENCY_CLEAR

    def test_strategy_ignores_overflowing_checkpoint(self, clock):
        """Test a checkpoint that itself overflowed is not rolled back to."""
        manager = _manager(clock)
        manager.create_checkpoint(_turns(10))
        assert manager.get_recovery_strategy(_turns(10)).type == RecoveryType.AGGRESSIVE_TRUNCATE

    def test_rollback_to_checkpoint(self, clock, conversation):
        """Test explicit rollback returns independent copies."""
        manager = _manager(clock)
        checkpoint_id = manager.create_checkpoint(conversation)
        restored = manager.rollback_to_checkpoint(checkpoint_id, _turns(10))
        assert [m.id for m in restored] == [m.id for m in conversation]
        assert restored[0] is not conversation[0]
        with pytest.raises(CheckpointNotFoundError):
            manager.rollback_to_checkpoint("chk_missing", conversation)


@pytest.mark.unit
class TestImprovementsIntegration:
    """Tests for snapshots, stats and persisted checkpoints."""

    @pytest.mark.asyncio
    async def test_truncation_snapshot_saved(self, clock):
        """Test evicted messages can be recovered."""
        improvements = ContextImprovementsManager(clock=clock)
        manager = _manager(clock, improvements=improvements)
        await manager.manage(_turns(9))

        recovered = improvements.truncation_manager.recover("trunc-1")
        assert [m.id for m in recovered] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_compaction_recorded(self, clock):
        """Test a compression is recorded and its messages tracked."""
        improvements = ContextImprovementsManager(clock=clock)
        manager = _manager(
            clock, compressor=FakeCompressor(), improvements=improvements, anchor_count=5
        )
        result = await manager.manage(_turns(9))

        stats = improvements.stats_tracker.get_stats()
        assert stats.total_compactions == 1
        assert stats.total_original_tokens == 500
        assert stats.total_compressed_tokens == 50
        assert stats.cascade_compactions == 0
        assert improvements.stats_tracker.is_cascade_compaction(result.messages[1:2])

    @pytest.mark.asyncio
    async def test_checkpoint_staged_for_disk(self, clock, storage):
        """Test pre-compression checkpoints are handed to disk persistence."""
        improvements = ContextImprovementsManager(checkpoint_storage=storage, clock=clock)
        manager = _manager(clock, improvements=improvements)
        result = await manager.manage(_turns(9))

        assert improvements.disk_checkpoint.pending_count == 1
        loaded = await improvements.disk_checkpoint.load(result.checkpoint_id)
        assert loaded.metadata["reason"] == PRE_COMPRESSION_REASON
        assert len(loaded.messages) == 9

    @pytest.mark.asyncio
    async def test_checkpoint_storage_failure(self, clock, storage):
        """Test a storage outage does not stop context management."""
        improvements = ContextImprovementsManager(
            {"disk_checkpoint": {"strategy": "immediate"}}, checkpoint_storage=storage, clock=clock
        )
        storage.fail = True
        result = await _manager(clock, improvements=improvements).manage(_turns(9))
        assert result.state == ContextState.HEALTHY
