"""Model-aware threshold registry.

Resolves warning/critical/overflow ratios for a model name from glob-style
rules. Custom rules registered at runtime are consulted before the built-in
table, newest first, so a later registration overrides an earlier one for the
same pattern.

Example:
    registry = ThresholdRegistry()
    registry.add(ModelThresholdConfig(model="gpt-4o*", profile="aggressive"))
    registry.resolve("gpt-4o-mini").profile  # "aggressive"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Literal, Optional

logger = logging.getLogger(__name__)

ThresholdProfile = Literal["conservative", "balanced", "aggressive"]

DEFAULT_PROFILE: ThresholdProfile = "balanced"


@dataclass(frozen=True)
class ThresholdConfig:
    """Budget usage ratios that trigger context management actions."""

    warning: float
    critical: float
    overflow: float


@dataclass(frozen=True)
class PartialThresholds:
    """Per-rule overrides; unset fields fall back to the profile."""

    warning: Optional[float] = None
    critical: Optional[float] = None
    overflow: Optional[float] = None


@dataclass(frozen=True)
class ModelThresholdConfig:
    """A registry rule mapping a model glob pattern to a profile."""

    model: str
    profile: ThresholdProfile
    thresholds: Optional[PartialThresholds] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a configuration check. Errors are human readable."""

    valid: bool
    errors: list[str] = field(default_factory=list)


THRESHOLD_PROFILES: dict[str, ThresholdConfig] = {
    "conservative": ThresholdConfig(warning=0.70, critical=0.80, overflow=0.90),
    "balanced": ThresholdConfig(warning=0.75, critical=0.85, overflow=0.95),
    "aggressive": ThresholdConfig(warning=0.85, critical=0.92, overflow=0.97),
}

BUILTIN_MODEL_THRESHOLDS: tuple[ModelThresholdConfig, ...] = (
    # Anthropic
    ModelThresholdConfig("claude-3-opus*", "conservative", reason="Highest quality, keep headroom"),
    ModelThresholdConfig("claude-opus-4*", "conservative", reason="Highest quality, keep headroom"),
    ModelThresholdConfig("claude-3-5-sonnet*", "balanced"),
    ModelThresholdConfig("claude-3.5-sonnet*", "balanced"),
    ModelThresholdConfig("claude-sonnet-4*", "balanced"),
    ModelThresholdConfig("claude-3-5-haiku*", "balanced"),
    ModelThresholdConfig("claude-3.5-haiku*", "balanced"),
    # DeepSeek
    ModelThresholdConfig("deepseek*", "aggressive", reason="Cheap tokens, large window"),
    # OpenAI
    ModelThresholdConfig("gpt-4o*", "balanced"),
    ModelThresholdConfig("gpt-4-turbo*", "balanced"),
    ModelThresholdConfig("gpt-4", "balanced"),
    ModelThresholdConfig("o1*", "conservative", reason="Reasoning models need output room"),
    ModelThresholdConfig("o3*", "conservative", reason="Reasoning models need output room"),
    # Google
    ModelThresholdConfig(
        "gemini*",
        "aggressive",
        thresholds=PartialThresholds(warning=0.88, critical=0.94, overflow=0.98),
        reason="Very large context window",
    ),
    # Open weights
    ModelThresholdConfig("mistral*", "balanced"),
    ModelThresholdConfig("llama*", "balanced"),
    ModelThresholdConfig("qwen*", "balanced"),
)


def matches_model_pattern(model: str, pattern: str) -> bool:
    """Case-insensitive glob match where ``*`` is the only wildcard.

    Every other character, including regex metacharacters such as ``.`` and
    ``+``, is matched literally.
    """
    model_lower = model.lower()
    pattern_lower = pattern.lower()
    if "*" not in pattern_lower:
        return model_lower == pattern_lower
    regex = ".*".join(re.escape(chunk) for chunk in pattern_lower.split("*"))
    return re.fullmatch(regex, model_lower, flags=re.DOTALL) is not None


def get_profile_thresholds(profile: ThresholdProfile) -> ThresholdConfig:
    """Fixed thresholds for a profile."""
    return replace(THRESHOLD_PROFILES[profile])


def _merge(base: ThresholdConfig, overrides: Optional[PartialThresholds]) -> ThresholdConfig:
    if overrides is None:
        return replace(base)
    return ThresholdConfig(
        warning=overrides.warning if overrides.warning is not None else base.warning,
        critical=overrides.critical if overrides.critical is not None else base.critical,
        overflow=overrides.overflow if overrides.overflow is not None else base.overflow,
    )


class ThresholdRegistry:
    """Explicit registry of model threshold rules.

    Construct one per process (or per test) and pass it to call sites.
    Built-in rules are immutable; ``clear()`` only drops custom rules.
    """

    def __init__(
        self,
        builtins: tuple[ModelThresholdConfig, ...] = BUILTIN_MODEL_THRESHOLDS,
    ) -> None:
        self._builtins = builtins
        self._custom: list[ModelThresholdConfig] = []

    def add(self, entry: ModelThresholdConfig) -> None:
        """Register a custom rule. Newer rules win over older ones."""
        if entry.profile not in THRESHOLD_PROFILES:
            raise ValueError(f"Unknown threshold profile: {entry.profile}")
        self._custom.append(entry)
        logger.debug(f"[ThresholdRegistry] Added rule {entry.model} -> {entry.profile}")

    def clear(self) -> None:
        """Remove all custom rules."""
        self._custom.clear()

    def find(self, model: str) -> Optional[ModelThresholdConfig]:
        """Return the first matching rule, custom rules first."""
        for entry in reversed(self._custom):
            if matches_model_pattern(model, entry.model):
                return entry
        for entry in self._builtins:
            if matches_model_pattern(model, entry.model):
                return entry
        return None

    def resolve_profile(
        self, model: str, default_profile: ThresholdProfile = DEFAULT_PROFILE
    ) -> ThresholdProfile:
        entry = self.find(model)
        return entry.profile if entry else default_profile

    def resolve(
        self, model: str, default_profile: ThresholdProfile = DEFAULT_PROFILE
    ) -> ThresholdConfig:
        """Resolve thresholds for a model. Returns a fresh value each call."""
        entry = self.find(model)
        if entry is None:
            return get_profile_thresholds(default_profile)
        return _merge(THRESHOLD_PROFILES[entry.profile], entry.thresholds)

    def all_configs(self) -> list[ModelThresholdConfig]:
        """Custom rules newest first, followed by built-ins."""
        return list(reversed(self._custom)) + list(self._builtins)

    @property
    def custom_count(self) -> int:
        return len(self._custom)


_default_registry = ThresholdRegistry()


def get_default_registry() -> ThresholdRegistry:
    """Process-wide registry used when no registry is injected."""
    return _default_registry


def get_threshold_profile(
    model: str,
    default_profile: ThresholdProfile = DEFAULT_PROFILE,
    registry: Optional[ThresholdRegistry] = None,
) -> ThresholdProfile:
    return (registry or _default_registry).resolve_profile(model, default_profile)


def get_threshold_config(
    model: str,
    default_profile: ThresholdProfile = DEFAULT_PROFILE,
    registry: Optional[ThresholdRegistry] = None,
) -> ThresholdConfig:
    return (registry or _default_registry).resolve(model, default_profile)


def add_model_threshold(
    entry: ModelThresholdConfig, registry: Optional[ThresholdRegistry] = None
) -> None:
    (registry or _default_registry).add(entry)


def clear_custom_thresholds(registry: Optional[ThresholdRegistry] = None) -> None:
    (registry or _default_registry).clear()


def get_all_threshold_configs(
    registry: Optional[ThresholdRegistry] = None,
) -> list[ModelThresholdConfig]:
    return (registry or _default_registry).all_configs()


def validate_thresholds(config: ThresholdConfig) -> ValidationResult:
    """Check ranges and ordering, collecting every violation."""
    errors: list[str] = []
    for name in ("warning", "critical", "overflow"):
        value = getattr(config, name)
        if not 0 < value < 1:
            errors.append(f"{name} threshold ({value}) must be between 0 and 1 (exclusive)")

    if config.warning >= config.critical:
        errors.append(
            f"warning threshold ({config.warning}) must be less than "
            f"critical threshold ({config.critical})"
        )
    if config.critical >= config.overflow:
        errors.append(
            f"critical threshold ({config.critical}) must be less than "
            f"overflow threshold ({config.overflow})"
        )
    return ValidationResult(valid=not errors, errors=errors)
