"""
Context improvements manager.

Single entry point for the optional compaction helpers: summary quality
validation, truncation recovery, cross-session inheritance, summary
protection, disk checkpoints and compaction statistics. Components are
created on first access. ``initialize`` and ``shutdown`` are idempotent;
a component that fails during either is reported in ``failed_components``
and the rest keep working. Disk checkpoints retry their storage on the next
access and leave ``failed_components`` once it answers again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from src.domain.exceptions.context import OperationCancelledError
from src.domain.ports.context.storage_port import ContextStoragePort
from src.infrastructure.agent.context.improvements.compaction_stats_tracker import (
    CompactionStatsTracker,
)
from src.infrastructure.agent.context.improvements.cross_session_inheritance import (
    CrossSessionInheritanceResolver,
)
from src.infrastructure.agent.context.improvements.disk_checkpoint_persistence import (
    DiskCheckpointPersistence,
)
from src.infrastructure.agent.context.improvements.summary_protection_filter import (
    SummaryProtectionFilter,
)
from src.infrastructure.agent.context.improvements.summary_quality_validator import (
    QualityValidationLLMClient,
    SummaryQualityValidator,
)
from src.infrastructure.agent.context.improvements.truncation_state_manager import (
    TruncationStateManager,
)
from src.infrastructure.agent.context.improvements.types import ContextImprovementsConfig

logger = logging.getLogger(__name__)

COMPONENT_COMPACTION_STATS = "compaction_stats"
COMPONENT_DISK_CHECKPOINT = "disk_checkpoint"


@dataclass(frozen=True)
class InitializationStatus:
    initialized: bool
    initialized_at: Optional[float]
    failed_components: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "initialized_at": self.initialized_at,
            "failed_components": list(self.failed_components),
        }


class ContextImprovementsManager:
    """
    Owns the improvement components for one agent session.

    Example:
        manager = ContextImprovementsManager(
            {"compaction_stats": {"persist": True}},
            checkpoint_storage=LocalFileStorage(".memstack/checkpoints"),
            stats_storage=LocalFileStorage(".memstack/stats"),
        )
        await manager.initialize()
        report = await manager.quality_validator.validate(messages, summary)
        manager.stats_tracker.record(5000, 500, message_count=10)
        await manager.shutdown()
    """

    def __init__(
        self,
        config: Union[ContextImprovementsConfig, Mapping[str, Any], None] = None,
        *,
        checkpoint_storage: Optional[ContextStoragePort] = None,
        stats_storage: Optional[ContextStoragePort] = None,
        inheritance_storage: Optional[ContextStoragePort] = None,
        llm_client: Optional[QualityValidationLLMClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the manager.

        Args:
            config: Full config, or per-section overrides merged with defaults
            checkpoint_storage: Store for disk checkpoints
            stats_storage: Store for compaction statistics
            inheritance_storage: Store for cross-session summaries
            llm_client: Evaluator for deep summary validation
            clock: Time source shared by all components
        """
        if isinstance(config, ContextImprovementsConfig):
            self._config = config
        else:
            self._config = ContextImprovementsConfig.merge(config)
        self._checkpoint_storage = checkpoint_storage
        self._stats_storage = stats_storage
        self._inheritance_storage = inheritance_storage
        self._llm_client = llm_client
        self._clock = clock

        self._initialized = False
        self._initialized_at: Optional[float] = None
        self._failed_components: list[str] = []

        self._quality_validator: Optional[SummaryQualityValidator] = None
        self._truncation_manager: Optional[TruncationStateManager] = None
        self._inheritance_resolver: Optional[CrossSessionInheritanceResolver] = None
        self._summary_protection: Optional[SummaryProtectionFilter] = None
        self._disk_checkpoint: Optional[DiskCheckpointPersistence] = None
        self._stats_tracker: Optional[CompactionStatsTracker] = None

        logger.debug(
            f"[ContextImprovements] Created: "
            f"inheritance={self._config.session_inheritance.enabled}, "
            f"protection={self._config.summary_protection.enabled}, "
            f"disk_checkpoint={self._config.disk_checkpoint.enabled}, "
            f"stats={self._config.compaction_stats.enabled}"
        )

    @property
    def config(self) -> ContextImprovementsConfig:
        return self._config

    @property
    def quality_validator(self) -> SummaryQualityValidator:
        if self._quality_validator is None:
            self._quality_validator = SummaryQualityValidator(
                self._config.summary_quality, self._llm_client
            )
        return self._quality_validator

    @property
    def truncation_manager(self) -> TruncationStateManager:
        if self._truncation_manager is None:
            self._truncation_manager = TruncationStateManager(
                self._config.truncation_recovery, clock=self._clock
            )
        return self._truncation_manager

    @property
    def inheritance_resolver(self) -> CrossSessionInheritanceResolver:
        if self._inheritance_resolver is None:
            self._inheritance_resolver = CrossSessionInheritanceResolver(
                self._config.session_inheritance,
                storage=self._inheritance_storage,
                clock=self._clock,
            )
        return self._inheritance_resolver

    @property
    def summary_protection(self) -> SummaryProtectionFilter:
        if self._summary_protection is None:
            self._summary_protection = SummaryProtectionFilter(self._config.summary_protection)
        return self._summary_protection

    @property
    def disk_checkpoint(self) -> DiskCheckpointPersistence:
        if self._disk_checkpoint is None:
            self._disk_checkpoint = DiskCheckpointPersistence(
                self._config.disk_checkpoint,
                storage=self._checkpoint_storage,
                clock=self._clock,
            )
        return self._disk_checkpoint

    @property
    def stats_tracker(self) -> CompactionStatsTracker:
        if self._stats_tracker is None:
            self._stats_tracker = CompactionStatsTracker(
                self._config.compaction_stats,
                storage=self._stats_storage,
                clock=self._clock,
            )
        return self._stats_tracker

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, abort_signal: Optional[asyncio.Event] = None) -> InitializationStatus:
        """Load persisted stats and check checkpoint storage, concurrently.

        Safe to call more than once; later calls return the current status.
        """
        if self._initialized:
            return self.get_status()

        self._failed_components = []
        tasks: dict[str, Any] = {}
        if self._config.compaction_stats.enabled and self._config.compaction_stats.persist:
            tasks[COMPONENT_COMPACTION_STATS] = self.stats_tracker.load(abort_signal)
        if self._config.disk_checkpoint.enabled:
            tasks[COMPONENT_DISK_CHECKPOINT] = self.disk_checkpoint.get_disk_usage(abort_signal)

        results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for name, result in zip(tasks, results):
            if isinstance(result, OperationCancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"[ContextImprovements] Failed to initialize {name}: {result}")
                self._failed_components.append(name)
                if name == COMPONENT_DISK_CHECKPOINT:
                    self.disk_checkpoint.mark_unavailable()
            elif isinstance(result, BaseException):
                raise result

        self._initialized = True
        self._initialized_at = self._clock()
        if self._failed_components:
            logger.info(f"[ContextImprovements] Initialized with failures: {self._failed_components}")
        else:
            logger.info("[ContextImprovements] Initialized")
        return self.get_status()

    async def shutdown(self, abort_signal: Optional[asyncio.Event] = None) -> None:
        """Persist stats and flush staged checkpoints. No-op if not initialized."""
        if not self._initialized:
            return

        if self._stats_tracker is not None and self._config.compaction_stats.persist:
            try:
                await self._stats_tracker.persist(abort_signal)
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.warning(f"[ContextImprovements] Failed to persist compaction stats: {e}")

        if self._disk_checkpoint is not None and self._disk_checkpoint.is_enabled:
            try:
                await self._disk_checkpoint.flush(abort_signal)
                await self._disk_checkpoint.cleanup(abort_signal)
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.warning(f"[ContextImprovements] Failed to finalize disk checkpoints: {e}")

        self._initialized = False
        self._initialized_at = None
        self._failed_components = []
        logger.info("[ContextImprovements] Shut down")

    def get_status(self) -> InitializationStatus:
        if (
            COMPONENT_DISK_CHECKPOINT in self._failed_components
            and self.disk_checkpoint.is_available
        ):
            logger.info("[ContextImprovements] Disk checkpoint storage recovered")
            self._failed_components.remove(COMPONENT_DISK_CHECKPOINT)
        return InitializationStatus(
            initialized=self._initialized,
            initialized_at=self._initialized_at,
            failed_components=tuple(self._failed_components),
        )
