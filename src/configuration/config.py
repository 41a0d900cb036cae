"""Configuration management for the context engine."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Context engine settings."""

    # Context Window Settings
    context_max_window: int = Field(default=128_000, alias="CONTEXT_MAX_WINDOW")
    context_output_reserve: int = Field(default=8_192, alias="CONTEXT_OUTPUT_RESERVE")
    context_system_reserve: int = Field(default=4_000, alias="CONTEXT_SYSTEM_RESERVE")
    context_model: str | None = Field(default=None, alias="CONTEXT_MODEL")

    # Threshold Settings (fractions of the history budget)
    context_warning_threshold: float = Field(default=0.75, alias="CONTEXT_WARNING_THRESHOLD")
    context_critical_threshold: float = Field(default=0.85, alias="CONTEXT_CRITICAL_THRESHOLD")
    context_overflow_threshold: float = Field(default=0.95, alias="CONTEXT_OVERFLOW_THRESHOLD")

    # Compaction Settings
    context_use_auto_condense: bool = Field(default=True, alias="CONTEXT_USE_AUTO_CONDENSE")
    context_preserve_tool_pairs: bool = Field(default=True, alias="CONTEXT_PRESERVE_TOOL_PAIRS")
    context_truncation_policy: Literal["sliding-window", "summary", "aggressive", "none"] = Field(
        default="sliding-window", alias="CONTEXT_TRUNCATION_POLICY"
    )
    context_max_tool_output_chars: int = Field(
        default=10_000, alias="CONTEXT_MAX_TOOL_OUTPUT_CHARS"
    )
    context_protected_tools: str | list[str] | None = Field(
        default=None, alias="CONTEXT_PROTECTED_TOOLS"
    )  # Comma-separated; None keeps the built-in list
    context_max_checkpoints: int = Field(default=5, alias="CONTEXT_MAX_CHECKPOINTS")

    # Token Cache Settings
    context_token_cache_size: int = Field(default=1_000, alias="CONTEXT_TOKEN_CACHE_SIZE")
    context_token_cache_ttl: float = Field(
        default=300.0, alias="CONTEXT_TOKEN_CACHE_TTL"
    )  # Seconds

    # Persistence Settings
    context_storage_dir: str = Field(default=".memstack/context", alias="CONTEXT_STORAGE_DIR")
    context_disk_checkpoints_enabled: bool = Field(
        default=True, alias="CONTEXT_DISK_CHECKPOINTS_ENABLED"
    )
    context_disk_checkpoint_strategy: Literal["immediate", "lazy"] = Field(
        default="lazy", alias="CONTEXT_DISK_CHECKPOINT_STRATEGY"
    )
    context_max_disk_usage: int = Field(
        default=100 * 1024 * 1024, alias="CONTEXT_MAX_DISK_USAGE"
    )  # Bytes
    context_stats_persist: bool = Field(default=True, alias="CONTEXT_STATS_PERSIST")
    context_session_inheritance_enabled: bool = Field(
        default=True, alias="CONTEXT_SESSION_INHERITANCE_ENABLED"
    )

    # Summary Quality Settings
    context_summary_llm_validation: bool = Field(
        default=False, alias="CONTEXT_SUMMARY_LLM_VALIDATION"
    )

    # Evidence Pack Settings
    evidence_total_budget: int = Field(default=8_000, alias="EVIDENCE_TOTAL_BUDGET")
    evidence_min_items: int = Field(default=3, alias="EVIDENCE_MIN_ITEMS")
    evidence_enable_fallback: bool = Field(default=True, alias="EVIDENCE_ENABLE_FALLBACK")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("context_truncation_policy", mode="before")
    @classmethod
    def normalize_truncation_policy(cls, value: str | None) -> str:
        """Normalize truncation policy value from environment."""
        if value is None:
            return "sliding-window"
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized in {"sliding-window", "summary", "aggressive", "none"}:
            return normalized
        raise ValueError(
            "CONTEXT_TRUNCATION_POLICY must be one of: sliding-window, summary, aggressive, none"
        )

    @field_validator("context_protected_tools", mode="before")
    @classmethod
    def split_protected_tools(cls, value: str | list[str] | None) -> list[str] | None:
        """Accept a comma-separated string or a list."""
        if value is None or isinstance(value, list):
            return value
        return [item.strip() for item in str(value).split(",") if item.strip()]

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.context_storage_dir) / "checkpoints"

    @property
    def stats_dir(self) -> Path:
        return Path(self.context_storage_dir) / "stats"

    @property
    def inheritance_dir(self) -> Path:
        return Path(self.context_storage_dir) / "inheritance"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
