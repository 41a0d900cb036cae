"""
Context Budget Manager - Threshold-driven context maintenance.

Keeps conversation history inside the model's history budget:
1. Classifies usage as healthy / warning / critical / overflow
2. Warning and above: trims oversized tool outputs (only past 20k tokens)
3. Critical and above: checkpoints, then truncates by priority to the
   warning threshold, then condenses the middle of the conversation into
   a summary when a compressor is available
4. Overflow: recovers by rolling back to a recent checkpoint, clearing all
   but the newest messages, or truncating without pair protection; tool
   blocks split by the last two are repaired afterwards

Each step re-measures usage and stops as soon as the context is healthy.
``truncation_policy`` adjusts steps 3 and 4: "none" stops after pruning,
"summary" condenses before truncating and "aggressive" truncates down to
the recovery target instead of the warning threshold.
Priorities are assigned in place on the messages passed to ``manage``.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from src.domain.exceptions.context import (
    CheckpointNotFoundError,
    SnapshotTooLargeError,
    StorageError,
)
from src.domain.model.context.message import ContextMessage, MessageRole
from src.infrastructure.agent.context.checkpoint import (
    Checkpoint,
    CheckpointManager,
    create_pre_compression_checkpoint,
)
from src.infrastructure.agent.context.config import DEFAULT_CONFIG, ContextManagerConfig
from src.infrastructure.agent.context.improvements.manager import ContextImprovementsManager
from src.infrastructure.agent.context.priority import DEFAULT_ANCHOR_COUNT, assign_priorities
from src.infrastructure.agent.context.threshold import ThresholdConfig, ThresholdRegistry
from src.infrastructure.agent.context.tool_block_repair import fix_mismatched_tool_blocks
from src.infrastructure.agent.context.tool_trimming import PRUNE_MINIMUM_TOKENS, prune_tool_outputs
from src.infrastructure.agent.context.truncation import (
    TextTokenizer,
    TruncationResult,
    calculate_tokens,
    truncate,
)

logger = logging.getLogger(__name__)

DEFAULT_RECENT_COUNT = 3
MIN_COMPRESS_MESSAGES = 4
AGGRESSIVE_TRUNCATE_TARGET = 0.7
EMERGENCY_KEEP_COUNT = 5
ROLLBACK_MAX_AGE_SECONDS = 10 * 60


class ContextState(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    OVERFLOW = "overflow"


class RecoveryType(str, Enum):
    ROLLBACK = "rollback"
    AGGRESSIVE_TRUNCATE = "aggressive_truncate"
    EMERGENCY_CLEAR = "emergency_clear"


@dataclass(frozen=True)
class RecoveryStrategy:
    type: RecoveryType
    checkpoint_id: Optional[str] = None
    target_percent: float = AGGRESSIVE_TRUNCATE_TARGET
    keep_count: int = EMERGENCY_KEEP_COUNT


@dataclass(frozen=True)
class CompressionOutcome:
    """What a compressor returns for one condensed range."""

    summary: ContextMessage
    compressed_message_ids: tuple[str, ...]
    ratio: float


class ContextCompressor(Protocol):
    """Condenses ``messages[start:end]`` into a single summary message."""

    async def compress(
        self, messages: Sequence[ContextMessage], start: int, end: int
    ) -> CompressionOutcome: ...


@dataclass
class ManageResult:
    """Result of one ``manage`` pass."""

    messages: list[ContextMessage]
    state: ContextState
    token_count: int
    budget_used: float
    actions: list[str] = field(default_factory=list)
    checkpoint_id: Optional[str] = None

    def to_event_data(self) -> dict[str, Any]:
        """Convert to event data for SSE/WebSocket."""
        return {
            "state": self.state.value,
            "token_count": self.token_count,
            "budget_used": round(self.budget_used, 4),
            "actions": list(self.actions),
            "checkpoint_id": self.checkpoint_id,
            "message_count": len(self.messages),
        }


def estimate_required_actions(
    token_count: int, history_budget: int, thresholds: ThresholdConfig
) -> list[str]:
    """Steps ``manage`` would take for a given token count."""
    usage = token_count / history_budget if history_budget > 0 else float("inf")
    if usage >= thresholds.overflow:
        return ["prune", "checkpoint", "truncate", "compress", "recovery"]
    if usage >= thresholds.critical:
        return ["prune", "checkpoint", "truncate", "compress"]
    if usage >= thresholds.warning:
        return ["prune"]
    return []


class ContextBudgetManager:
    """
    Automatic context maintenance for one conversation.

    Usage:
        manager = ContextBudgetManager(config, model="gpt-4o", compressor=compressor)
        result = await manager.manage(messages)
        # Send result.messages to the LLM, emit result.to_event_data()
    """

    def __init__(
        self,
        config: Optional[ContextManagerConfig] = None,
        *,
        model: Optional[str] = None,
        registry: Optional[ThresholdRegistry] = None,
        compressor: Optional[ContextCompressor] = None,
        tokenizer: Optional[TextTokenizer] = None,
        improvements: Optional[ContextImprovementsManager] = None,
        anchor_count: int = DEFAULT_ANCHOR_COUNT,
        recent_count: int = DEFAULT_RECENT_COUNT,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the budget manager.

        Args:
            config: Window size, reserves, thresholds and trimming options
            model: Model name; when given, thresholds come from the registry
            registry: Threshold rules used to resolve ``model``
            compressor: Summarizer used when ``use_auto_condense`` is set
            tokenizer: Text token counter (defaults to 4 chars per token)
            improvements: Optional helpers for snapshots, stats and persistence
            anchor_count: Messages pinned at each end of the conversation
            recent_count: Newest messages left out of compression
            clock: Time source for checkpoint age
        """
        self.config = config or DEFAULT_CONFIG
        self.model = model
        self.compressor = compressor if self.config.use_auto_condense else None
        self.tokenizer = tokenizer
        self.improvements = improvements
        self.anchor_count = anchor_count
        self.recent_count = recent_count
        self._clock = clock
        self._truncations = itertools.count(1)

        if model is not None:
            self.thresholds = (registry or ThresholdRegistry()).resolve(model)
        else:
            self.thresholds = self.config.threshold_config()
        self.history_budget = self.config.available_budget
        self.checkpoints = CheckpointManager(
            max_checkpoints=self.config.max_checkpoints, clock=clock
        )

    def count_tokens(self, messages: Sequence[ContextMessage]) -> int:
        return calculate_tokens(messages, self.tokenizer)

    def usage(self, token_count: int) -> float:
        if self.history_budget <= 0:
            return float("inf") if token_count > 0 else 0.0
        return token_count / self.history_budget

    def calculate_state(self, token_count: int) -> ContextState:
        usage = self.usage(token_count)
        if usage >= self.thresholds.overflow:
            return ContextState.OVERFLOW
        if usage >= self.thresholds.critical:
            return ContextState.CRITICAL
        if usage >= self.thresholds.warning:
            return ContextState.WARNING
        return ContextState.HEALTHY

    def estimate_required_actions(self, messages: Sequence[ContextMessage]) -> list[str]:
        return estimate_required_actions(
            self.count_tokens(messages), self.history_budget, self.thresholds
        )

    async def manage(self, messages: Sequence[ContextMessage]) -> ManageResult:
        """Bring messages back under budget, escalating one step at a time."""
        current = list(messages)
        actions: list[str] = []
        checkpoint_id: Optional[str] = None
        tokens = self.count_tokens(current)
        state = self.calculate_state(tokens)

        if state == ContextState.HEALTHY:
            return self._result(current, state, tokens, actions, checkpoint_id)

        if tokens >= PRUNE_MINIMUM_TOKENS:
            current = self._prune(current, actions)
            tokens = self.count_tokens(current)
            state = self.calculate_state(tokens)
            if state == ContextState.HEALTHY:
                return self._result(current, state, tokens, actions, checkpoint_id)

        policy = self.config.truncation_policy
        if state in (ContextState.CRITICAL, ContextState.OVERFLOW) and policy == "none":
            logger.info(
                f"[ContextBudget] Truncation policy is 'none', leaving {tokens}/"
                f"{self.history_budget} tokens in place"
            )
            return self._result(current, state, tokens, actions, checkpoint_id)

        if state in (ContextState.CRITICAL, ContextState.OVERFLOW):
            checkpoint = create_pre_compression_checkpoint(self.checkpoints, current, tokens)
            checkpoint_id = checkpoint.id
            actions.append(f"checkpoint:{checkpoint.id}")
            await self._persist_checkpoint(checkpoint)

            condense_first = policy == "summary" and self.compressor is not None
            if condense_first:
                current = await self._compress(current, actions)
                tokens = self.count_tokens(current)
                state = self.calculate_state(tokens)

            if state in (ContextState.CRITICAL, ContextState.OVERFLOW):
                target = self._truncation_target()
                current = self._truncate(current, target, True, "token_overflow", actions).messages
                tokens = self.count_tokens(current)
                state = self.calculate_state(tokens)

            if (
                state in (ContextState.CRITICAL, ContextState.OVERFLOW)
                and self.compressor
                and not condense_first
            ):
                current = await self._compress(current, actions)
                tokens = self.count_tokens(current)
                state = self.calculate_state(tokens)

        if state == ContextState.OVERFLOW:
            strategy = self.get_recovery_strategy(current)
            current = self._recover(current, strategy, actions)
            tokens = self.count_tokens(current)
            state = self.calculate_state(tokens)

        if state != ContextState.HEALTHY:
            logger.info(
                f"[ContextBudget] Ended in {state.value} at {tokens}/{self.history_budget} tokens "
                f"after {len(actions)} actions"
            )
        return self._result(current, state, tokens, actions, checkpoint_id)

    def _truncation_target(self) -> int:
        """Token target for critical-level truncation.

        The warning threshold, or the aggressive recovery target when the
        policy is "aggressive" and that is lower.
        """
        ratio = self.thresholds.warning
        if self.config.truncation_policy == "aggressive":
            ratio = min(ratio, AGGRESSIVE_TRUNCATE_TARGET)
        return int(self.history_budget * ratio)

    def get_recovery_strategy(self, messages: Sequence[ContextMessage]) -> RecoveryStrategy:
        """Pick the overflow recovery.

        Rollback applies only to a checkpoint younger than ten minutes that
        was itself below the overflow threshold.
        """
        latest = self.checkpoints.latest()
        if (
            latest is not None
            and self._clock() - latest.created_at < ROLLBACK_MAX_AGE_SECONDS
            and self.usage(latest.token_count) < self.thresholds.overflow
        ):
            return RecoveryStrategy(type=RecoveryType.ROLLBACK, checkpoint_id=latest.id)
        if self.usage(self.count_tokens(messages)) > 1.0:
            return RecoveryStrategy(type=RecoveryType.EMERGENCY_CLEAR)
        return RecoveryStrategy(type=RecoveryType.AGGRESSIVE_TRUNCATE)

    def create_checkpoint(
        self, messages: Sequence[ContextMessage], label: Optional[str] = None
    ) -> str:
        checkpoint = self.checkpoints.create(
            messages, label=label, reason="user-request", token_count=self.count_tokens(messages)
        )
        return checkpoint.id

    def rollback_to_checkpoint(
        self, checkpoint_id: str, current_messages: Sequence[ContextMessage]
    ) -> list[ContextMessage]:
        """Raises CheckpointNotFoundError for an unknown id."""
        return self.checkpoints.rollback(checkpoint_id, current_messages).messages

    def _result(
        self,
        messages: list[ContextMessage],
        state: ContextState,
        tokens: int,
        actions: list[str],
        checkpoint_id: Optional[str],
    ) -> ManageResult:
        return ManageResult(
            messages=messages,
            state=state,
            token_count=tokens,
            budget_used=self.usage(tokens),
            actions=actions,
            checkpoint_id=checkpoint_id,
        )

    def _prune(self, messages: list[ContextMessage], actions: list[str]) -> list[ContextMessage]:
        before = self.count_tokens(messages)
        result = prune_tool_outputs(
            messages,
            max_output_chars=self.config.max_tool_output_chars,
            protected_tools=self.config.protected_tools,
        )
        if result.trimmed_count:
            saved = before - self.count_tokens(result.messages)
            actions.append(f"prune:{result.trimmed_count} tools trimmed")
            actions.append(f"prune:{saved} tokens saved")
        return result.messages

    def _truncate(
        self,
        messages: list[ContextMessage],
        target: int,
        preserve_tool_pairs: bool,
        reason: str,
        actions: list[str],
    ) -> TruncationResult:
        analysis = assign_priorities(messages, self.anchor_count)
        result = truncate(
            messages,
            target,
            analysis=analysis,
            tokenizer=self.tokenizer,
            preserve_tool_pairs=preserve_tool_pairs and self.config.preserve_tool_pairs,
        )
        if result.removed_count:
            if preserve_tool_pairs:
                actions.append(f"truncate:{result.removed_count} messages removed")
                actions.append(f"truncate:{result.tokens_saved} tokens saved")
            self._save_truncation_snapshot(result, reason)
        return result

    def _save_truncation_snapshot(self, result: TruncationResult, reason: str) -> None:
        if self.improvements is None:
            return
        truncation_id = f"trunc-{next(self._truncations)}"
        try:
            self.improvements.truncation_manager.save_snapshot(
                truncation_id, result.evicted, reason
            )
        except SnapshotTooLargeError as e:
            logger.warning(f"[ContextBudget] Truncation {truncation_id} not recoverable: {e}")

    async def _compress(
        self, messages: list[ContextMessage], actions: list[str]
    ) -> list[ContextMessage]:
        start = next(
            (i for i, message in enumerate(messages) if message.role != MessageRole.SYSTEM), 0
        )
        end = max(start + 1, len(messages) - self.recent_count)
        if end - start < MIN_COMPRESS_MESSAGES:
            return messages

        before = self.count_tokens(messages)
        try:
            outcome = await self.compressor.compress(messages, start, end)
        except Exception as e:
            logger.warning(f"[ContextBudget] Compression failed: {e}")
            actions.append(f"compress:failed - {e}")
            return messages

        condensed = messages[:start] + [outcome.summary] + messages[end:]
        saved = before - self.count_tokens(condensed)
        actions.append(f"compress:{len(outcome.compressed_message_ids)} messages -> 1 summary")
        actions.append(f"compress:{saved} tokens saved (ratio: {outcome.ratio:.2f})")
        await self._record_compaction(messages[start:end], outcome)
        return condensed

    async def _record_compaction(
        self, compacted: list[ContextMessage], outcome: CompressionOutcome
    ) -> None:
        if self.improvements is None:
            return
        tokens_before = self.count_tokens(compacted)
        tokens_after = self.count_tokens([outcome.summary])
        tracker = self.improvements.stats_tracker
        is_cascade = tracker.is_cascade_compaction(compacted)
        report = await self.improvements.quality_validator.validate(compacted, outcome.summary.text)
        if not report.passed:
            logger.warning(f"[ContextBudget] Summary quality issues: {list(report.warnings)}")
        tracker.record(
            original_tokens=tokens_before,
            compressed_tokens=tokens_after,
            message_count=len(compacted),
            is_cascade=is_cascade,
            quality_report=report.to_dict(),
        )
        tracker.track_compacted_messages(outcome.compressed_message_ids, outcome.summary.id)

    async def _persist_checkpoint(self, checkpoint: Checkpoint) -> None:
        if self.improvements is None:
            return
        persistence = self.improvements.disk_checkpoint
        if not persistence.is_enabled:
            return
        try:
            await persistence.persist_checkpoint(checkpoint)
        except StorageError as e:
            logger.warning(f"[ContextBudget] Failed to persist checkpoint {checkpoint.id}: {e}")

    def _recover(
        self,
        messages: list[ContextMessage],
        strategy: RecoveryStrategy,
        actions: list[str],
    ) -> list[ContextMessage]:
        if strategy.type == RecoveryType.ROLLBACK:
            try:
                result = self.checkpoints.rollback(strategy.checkpoint_id, messages)
            except CheckpointNotFoundError:
                return self._recover(
                    messages, RecoveryStrategy(type=RecoveryType.AGGRESSIVE_TRUNCATE), actions
                )
            actions.append(f"recovery:rollback to {strategy.checkpoint_id}")
            actions.append(f"recovery:discarded {result.discarded_messages} messages")
            return result.messages

        if strategy.type == RecoveryType.EMERGENCY_CLEAR:
            system = [m for m in messages if m.role == MessageRole.SYSTEM]
            others = [m for m in messages if m.role != MessageRole.SYSTEM]
            recent = others[-strategy.keep_count :] if strategy.keep_count > 0 else []
            actions.append("recovery:emergency clear")
            actions.append(f"recovery:kept {len(system)} system + {len(recent)} recent")
            return self._repair_tool_blocks(system + recent, actions)

        target = int(self.history_budget * strategy.target_percent)
        result = self._truncate(messages, target, False, "emergency_recovery", actions)
        actions.append(f"recovery:aggressive truncate to {round(strategy.target_percent * 100)}%")
        actions.append(f"recovery:removed {result.removed_count} messages")
        return self._repair_tool_blocks(result.messages, actions)

    def _repair_tool_blocks(
        self, messages: list[ContextMessage], actions: list[str]
    ) -> list[ContextMessage]:
        """Drop unanswered invocations and re-anchor results cut off by recovery."""
        repair = fix_mismatched_tool_blocks(
            messages, remove_orphaned_uses=True, add_placeholder_uses=True
        )
        if repair.repaired:
            actions.append(f"recovery:repaired {len(repair.repairs)} tool blocks")
        return repair.messages
