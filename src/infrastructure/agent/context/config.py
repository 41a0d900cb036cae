"""Context manager configuration.

``ContextManagerConfig`` is a plain value; build it with ``create_config``
(overrides merged onto ``DEFAULT_CONFIG``) and check it with
``validate_config``. Validation reports problems, it never raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal

from src.infrastructure.agent.context.threshold import (
    ModelThresholdConfig,
    ThresholdConfig,
    ValidationResult,
)

TruncationPolicy = Literal["sliding-window", "summary", "aggressive", "none"]

TRUNCATION_POLICIES: tuple[str, ...] = ("sliding-window", "summary", "aggressive", "none")

DEFAULT_PROTECTED_TOOLS: tuple[str, ...] = ("skill", "memory_search", "code_review")


@dataclass(frozen=True)
class SummaryModelFallback:
    """Ordered summarization models tried when the primary model fails."""

    models: tuple[str, ...] = ("gpt-4o-mini", "claude-3-haiku-20240307", "gemini-1.5-flash")
    max_retries_per_model: int = 2
    timeout_ms: int = 30_000


@dataclass(frozen=True)
class ContextManagerConfig:
    """Configuration for context window management.

    Attributes:
        max_context_window: Model context window in tokens.
        output_reserve: Tokens reserved for the model's response.
        system_reserve: Tokens reserved for the system prompt.
        warning_threshold: Usage ratio that raises a warning.
        critical_threshold: Usage ratio that triggers compaction.
        overflow_threshold: Usage ratio that forces truncation.
        use_auto_condense: Summarize with an LLM instead of only evicting.
        preserve_tool_pairs: Evict tool invocations and results together.
        max_checkpoints: Checkpoints kept for rollback.
        max_tool_output_chars: Per tool result character cap before trimming.
        protected_tools: Tools whose output is never trimmed.
        token_cache_size: Token cache capacity.
        token_cache_ttl: Token cache entry lifetime in seconds.
        truncation_policy: How ContextBudgetManager reduces a critical context
            ("sliding-window", "summary", "aggressive" or "none").
        summary_model_fallback: Fallback chain for summarization. Advisory:
            read by ContextCompressor implementations, not by the budget manager.
        custom_thresholds: Extra model threshold rules.
    """

    max_context_window: int = 128_000
    output_reserve: int = 8_192
    system_reserve: int = 4_000
    warning_threshold: float = 0.75
    critical_threshold: float = 0.85
    overflow_threshold: float = 0.95
    use_auto_condense: bool = True
    preserve_tool_pairs: bool = True
    max_checkpoints: int = 5
    max_tool_output_chars: int = 10_000
    protected_tools: tuple[str, ...] = DEFAULT_PROTECTED_TOOLS
    token_cache_size: int = 1_000
    token_cache_ttl: float = 300.0
    truncation_policy: TruncationPolicy = "sliding-window"
    summary_model_fallback: SummaryModelFallback = field(default_factory=SummaryModelFallback)
    custom_thresholds: tuple[ModelThresholdConfig, ...] = ()

    @property
    def available_budget(self) -> int:
        """Tokens left for conversation history after reserves."""
        return max(0, self.max_context_window - self.output_reserve - self.system_reserve)

    def threshold_config(self) -> ThresholdConfig:
        return ThresholdConfig(
            warning=self.warning_threshold,
            critical=self.critical_threshold,
            overflow=self.overflow_threshold,
        )

    def tokens_at(self, ratio: float) -> int:
        """Absolute token count for a usage ratio of the available budget."""
        return int(self.available_budget * ratio)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["protected_tools"] = list(self.protected_tools)
        data["summary_model_fallback"] = {
            "models": list(self.summary_model_fallback.models),
            "max_retries_per_model": self.summary_model_fallback.max_retries_per_model,
            "timeout_ms": self.summary_model_fallback.timeout_ms,
        }
        data["custom_thresholds"] = [entry.model for entry in self.custom_thresholds]
        return data


DEFAULT_CONFIG = ContextManagerConfig()


def create_config(**overrides: Any) -> ContextManagerConfig:
    """Merge overrides onto the defaults.

    ``None`` values are ignored so callers can forward optional settings.
    Sequences are normalized to tuples.
    """
    cleaned: dict[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in ("protected_tools", "custom_thresholds") and not isinstance(value, tuple):
            value = tuple(value)
        cleaned[key] = value
    return replace(DEFAULT_CONFIG, **cleaned)


def validate_config(config: ContextManagerConfig) -> ValidationResult:
    """Validate a configuration, collecting every problem found."""
    errors: list[str] = []

    for name in ("warning_threshold", "critical_threshold", "overflow_threshold"):
        value = getattr(config, name)
        if not 0 <= value <= 1:
            errors.append(f"{name} must be between 0 and 1, got {value}")

    if config.warning_threshold >= config.critical_threshold:
        errors.append(
            f"warning_threshold ({config.warning_threshold}) must be less than "
            f"critical_threshold ({config.critical_threshold})"
        )
    if config.critical_threshold >= config.overflow_threshold:
        errors.append(
            f"critical_threshold ({config.critical_threshold}) must be less than "
            f"overflow_threshold ({config.overflow_threshold})"
        )

    if config.max_context_window <= 0:
        errors.append(f"max_context_window must be positive, got {config.max_context_window}")

    for name in (
        "output_reserve",
        "system_reserve",
        "max_checkpoints",
        "max_tool_output_chars",
        "token_cache_size",
        "token_cache_ttl",
    ):
        value = getattr(config, name)
        if value < 0:
            errors.append(f"{name} must be non-negative, got {value}")

    if config.truncation_policy not in TRUNCATION_POLICIES:
        errors.append(
            f"truncation_policy must be one of {', '.join(TRUNCATION_POLICIES)}, "
            f"got {config.truncation_policy!r}"
        )

    return ValidationResult(valid=not errors, errors=errors)
