"""Context management module for agent conversations.

This module provides context budgeting and compaction capabilities:
- Per-model threshold profiles and context configuration
- Cached token counting
- Tool-pair analysis, priority assignment and priority-based truncation
- Detection and repair of broken tool invocation / result pairs
- Effective API history over compressed and summarized messages
- In-memory checkpoints with rollback
- Threshold-driven context maintenance (prune, truncate, condense, recover)
- Reasoning blocks for models that require them
- Evidence packs for code context (see ``evidence``)
- Optional compaction helpers (see ``improvements``)
"""

from .api_history_filter import (
    EffectiveHistoryResult,
    get_compression_chain,
    get_effective_api_history,
    should_include_in_api_history,
    to_api_format,
)
from .budget_manager import (
    CompressionOutcome,
    ContextBudgetManager,
    ContextCompressor,
    ContextState,
    ManageResult,
    RecoveryStrategy,
    RecoveryType,
    estimate_required_actions,
)
from .checkpoint import Checkpoint, CheckpointManager, RollbackResult
from .config import (
    DEFAULT_CONFIG,
    ContextManagerConfig,
    SummaryModelFallback,
    create_config,
    validate_config,
)
from .priority import assign_priorities, calculate_priority, eviction_order
from .reasoning_block import (
    add_reasoning_block,
    create_reasoning_block,
    detect_model_family,
    extract_reasoning_content,
    process_for_model,
    requires_reasoning_block,
)
from .threshold import (
    ModelThresholdConfig,
    ThresholdConfig,
    ThresholdRegistry,
    get_threshold_config,
    get_threshold_profile,
    validate_thresholds,
)
from .token_cache import CachedTokenCounter, TokenCache, with_cache
from .tool_block_repair import (
    RepairResult,
    ToolBlockHealthSummary,
    create_placeholder_tool_use,
    fix_mismatched_tool_blocks,
    get_tool_block_health_summary,
    has_tool_block_issues,
    reorder_tool_result,
    validate_tool_block_pairing,
)
from .tool_pairing import ToolPair, ToolPairAnalysis, analyze_tool_pairs, get_linked_indices
from .tool_trimming import (
    PRUNE_MINIMUM_TOKENS,
    PruneResult,
    ToolCompactionStats,
    find_compacted_blocks,
    get_compaction_stats,
    mark_as_compacted,
    prune_tool_outputs,
)
from .truncation import TruncationResult, TruncationSnapshot, estimate_tokens, truncate

__all__ = [
    # API history
    "EffectiveHistoryResult",
    "get_compression_chain",
    "get_effective_api_history",
    "should_include_in_api_history",
    "to_api_format",
    # Budget manager
    "CompressionOutcome",
    "ContextBudgetManager",
    "ContextCompressor",
    "ContextState",
    "ManageResult",
    "RecoveryStrategy",
    "RecoveryType",
    "estimate_required_actions",
    # Checkpoints
    "Checkpoint",
    "CheckpointManager",
    "RollbackResult",
    # Config
    "DEFAULT_CONFIG",
    "ContextManagerConfig",
    "SummaryModelFallback",
    "create_config",
    "validate_config",
    # Priority
    "assign_priorities",
    "calculate_priority",
    "eviction_order",
    # Reasoning blocks
    "add_reasoning_block",
    "create_reasoning_block",
    "detect_model_family",
    "extract_reasoning_content",
    "process_for_model",
    "requires_reasoning_block",
    # Thresholds
    "ModelThresholdConfig",
    "ThresholdConfig",
    "ThresholdRegistry",
    "get_threshold_config",
    "get_threshold_profile",
    "validate_thresholds",
    # Token cache
    "CachedTokenCounter",
    "TokenCache",
    "with_cache",
    # Tool pairs, repair and trimming
    "PRUNE_MINIMUM_TOKENS",
    "PruneResult",
    "RepairResult",
    "ToolBlockHealthSummary",
    "ToolCompactionStats",
    "ToolPair",
    "ToolPairAnalysis",
    "analyze_tool_pairs",
    "create_placeholder_tool_use",
    "find_compacted_blocks",
    "fix_mismatched_tool_blocks",
    "get_compaction_stats",
    "get_linked_indices",
    "get_tool_block_health_summary",
    "has_tool_block_issues",
    "mark_as_compacted",
    "prune_tool_outputs",
    "reorder_tool_result",
    "validate_tool_block_pairing",
    # Truncation
    "TruncationResult",
    "TruncationSnapshot",
    "estimate_tokens",
    "truncate",
]
