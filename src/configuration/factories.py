"""
Factory functions for the context engine.

Builds the core config, improvement components and evidence pack builder
from ``Settings`` so that environment parsing stays out of the core.
"""

import logging
from typing import Optional

from src.configuration.config import Settings, get_settings
from src.infrastructure.adapters.secondary.storage.local_file_storage import LocalFileStorage
from src.infrastructure.agent.context.budget_manager import ContextBudgetManager, ContextCompressor
from src.infrastructure.agent.context.config import ContextManagerConfig, create_config
from src.infrastructure.agent.context.evidence.pack_builder import PackBuilder, PackBuilderConfig
from src.infrastructure.agent.context.improvements.manager import ContextImprovementsManager
from src.infrastructure.agent.context.improvements.summary_quality_validator import (
    QualityValidationLLMClient,
)
from src.infrastructure.agent.context.improvements.types import (
    CompactionStatsConfig,
    ContextImprovementsConfig,
    DiskCheckpointConfig,
    SessionInheritanceConfig,
    SummaryQualityConfig,
)
from src.infrastructure.agent.context.threshold import ThresholdRegistry
from src.infrastructure.agent.context.token_cache import TokenCounter, with_cache

logger = logging.getLogger(__name__)


def create_context_config(settings: Optional[Settings] = None) -> ContextManagerConfig:
    """Create the core context config from settings."""
    settings = settings or get_settings()
    return create_config(
        max_context_window=settings.context_max_window,
        output_reserve=settings.context_output_reserve,
        system_reserve=settings.context_system_reserve,
        warning_threshold=settings.context_warning_threshold,
        critical_threshold=settings.context_critical_threshold,
        overflow_threshold=settings.context_overflow_threshold,
        use_auto_condense=settings.context_use_auto_condense,
        preserve_tool_pairs=settings.context_preserve_tool_pairs,
        max_checkpoints=settings.context_max_checkpoints,
        max_tool_output_chars=settings.context_max_tool_output_chars,
        protected_tools=settings.context_protected_tools,
        token_cache_size=settings.context_token_cache_size,
        token_cache_ttl=settings.context_token_cache_ttl,
        truncation_policy=settings.context_truncation_policy,
    )


def create_threshold_registry(config: ContextManagerConfig) -> ThresholdRegistry:
    """Registry with the built-in rules plus the config's custom rules."""
    registry = ThresholdRegistry()
    for entry in config.custom_thresholds:
        registry.add(entry)
    return registry


def create_improvements_manager(
    settings: Optional[Settings] = None,
    llm_client: Optional[QualityValidationLLMClient] = None,
) -> ContextImprovementsManager:
    """
    Create ContextImprovementsManager backed by local file storage.

    Args:
        settings: Settings to use; defaults to the cached settings
        llm_client: Optional evaluator for deep summary validation

    Returns:
        Manager that still needs ``await manager.initialize()``
    """
    settings = settings or get_settings()
    config = ContextImprovementsConfig(
        summary_quality=SummaryQualityConfig(
            enable_llm_validation=settings.context_summary_llm_validation and llm_client is not None
        ),
        session_inheritance=SessionInheritanceConfig(
            enabled=settings.context_session_inheritance_enabled
        ),
        disk_checkpoint=DiskCheckpointConfig(
            enabled=settings.context_disk_checkpoints_enabled,
            max_disk_usage=settings.context_max_disk_usage,
            strategy=settings.context_disk_checkpoint_strategy,
        ),
        compaction_stats=CompactionStatsConfig(persist=settings.context_stats_persist),
    )
    logger.info(f"Creating context improvements manager under {settings.context_storage_dir}")
    return ContextImprovementsManager(
        config,
        checkpoint_storage=LocalFileStorage(settings.checkpoint_dir),
        stats_storage=LocalFileStorage(settings.stats_dir),
        inheritance_storage=LocalFileStorage(settings.inheritance_dir),
        llm_client=llm_client,
    )


def create_budget_manager(
    settings: Optional[Settings] = None,
    *,
    token_counter: Optional[TokenCounter] = None,
    compressor: Optional[ContextCompressor] = None,
    improvements: Optional[ContextImprovementsManager] = None,
) -> ContextBudgetManager:
    """Create a budget manager; a supplied token counter is wrapped in the token cache."""
    settings = settings or get_settings()
    config = create_context_config(settings)
    tokenizer = None
    if token_counter is not None:
        tokenizer = with_cache(token_counter, config.token_cache_size, config.token_cache_ttl)
    return ContextBudgetManager(
        config,
        model=settings.context_model,
        registry=create_threshold_registry(config),
        compressor=compressor,
        tokenizer=tokenizer,
        improvements=improvements,
    )


def create_pack_builder(settings: Optional[Settings] = None) -> PackBuilder:
    """Create the evidence pack builder from settings."""
    settings = settings or get_settings()
    return PackBuilder(
        PackBuilderConfig(
            total_budget=settings.evidence_total_budget,
            min_evidence_items=settings.evidence_min_items,
            enable_fallback=settings.evidence_enable_fallback,
        )
    )
