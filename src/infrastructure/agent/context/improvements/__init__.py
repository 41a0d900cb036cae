"""Optional compaction helpers: quality checks, recovery, inheritance, persistence."""

from src.infrastructure.agent.context.improvements.compaction_stats_tracker import (
    CompactionStatsTracker,
    create_compaction_stats_tracker,
)
from src.infrastructure.agent.context.improvements.cross_session_inheritance import (
    CrossSessionInheritanceResolver,
    create_cross_session_inheritance_resolver,
)
from src.infrastructure.agent.context.improvements.disk_checkpoint_persistence import (
    DiskCheckpointPersistence,
    LoadedCheckpoint,
)
from src.infrastructure.agent.context.improvements.manager import (
    ContextImprovementsManager,
    InitializationStatus,
)
from src.infrastructure.agent.context.improvements.summary_protection_filter import (
    DEFAULT_SUMMARY_PROTECTION_CONFIG,
    ProtectionStats,
    SummaryProtectionFilter,
    create_summary_protection_filter,
)
from src.infrastructure.agent.context.improvements.summary_quality_validator import (
    QualityValidationLLMClient,
    SummaryQualityValidator,
    create_summary_quality_validator,
    extract_technical_terms,
)
from src.infrastructure.agent.context.improvements.truncation_state_manager import (
    TruncationStateManager,
    create_truncation_state_manager,
)
from src.infrastructure.agent.context.improvements.types import (
    CompactionHistoryEntry,
    CompactionStats,
    CompactionStatsConfig,
    ContextImprovementsConfig,
    DEFAULT_IMPROVEMENTS_CONFIG,
    DiskCheckpointConfig,
    InheritedContext,
    InheritedSummary,
    PersistedCheckpoint,
    SessionInheritanceConfig,
    SummaryProtectionConfig,
    SummaryQualityConfig,
    SummaryQualityReport,
    TruncationRecoveryConfig,
    TruncationState,
)

__all__ = [
    "CompactionHistoryEntry",
    "CompactionStats",
    "CompactionStatsConfig",
    "CompactionStatsTracker",
    "ContextImprovementsConfig",
    "ContextImprovementsManager",
    "CrossSessionInheritanceResolver",
    "DEFAULT_IMPROVEMENTS_CONFIG",
    "DEFAULT_SUMMARY_PROTECTION_CONFIG",
    "DiskCheckpointConfig",
    "DiskCheckpointPersistence",
    "InheritedContext",
    "InheritedSummary",
    "InitializationStatus",
    "LoadedCheckpoint",
    "PersistedCheckpoint",
    "ProtectionStats",
    "QualityValidationLLMClient",
    "SessionInheritanceConfig",
    "SummaryProtectionConfig",
    "SummaryProtectionFilter",
    "SummaryQualityConfig",
    "SummaryQualityReport",
    "SummaryQualityValidator",
    "TruncationRecoveryConfig",
    "TruncationState",
    "TruncationStateManager",
    "create_compaction_stats_tracker",
    "create_cross_session_inheritance_resolver",
    "create_summary_protection_filter",
    "create_summary_quality_validator",
    "create_truncation_state_manager",
    "extract_technical_terms",
]
