"""
Unit tests for context engine settings and factories.

Tests cover:
- Environment parsing and validation in Settings
- Core config, improvements manager and budget manager factories
- Evidence pack builder factory
"""

import pytest
from pydantic import ValidationError

from src.configuration.config import Settings, get_settings
from src.configuration.factories import (
    create_budget_manager,
    create_context_config,
    create_improvements_manager,
    create_pack_builder,
    create_threshold_registry,
)
from src.infrastructure.adapters.secondary.storage.local_file_storage import LocalFileStorage
from src.infrastructure.agent.context.config import DEFAULT_PROTECTED_TOOLS, create_config
from src.infrastructure.agent.context.threshold import ModelThresholdConfig, PartialThresholds


def _settings(**env):
    return Settings(_env_file=None, **env)


@pytest.mark.unit
class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        """Test defaults match the core config defaults."""
        settings = _settings()
        assert settings.context_max_window == 128_000
        assert settings.context_truncation_policy == "sliding-window"
        assert settings.context_protected_tools is None
        assert settings.context_disk_checkpoint_strategy == "lazy"

    def test_env_overrides(self, monkeypatch):
        """Test values are read from the environment."""
        monkeypatch.setenv("CONTEXT_MAX_WINDOW", "32000")
        monkeypatch.setenv("CONTEXT_MODEL", "gpt-4o")
        monkeypatch.setenv("CONTEXT_STORAGE_DIR", "/tmp/ctx")
        settings = _settings()
        assert settings.context_max_window == 32_000
        assert settings.context_model == "gpt-4o"
        assert str(settings.checkpoint_dir) == "/tmp/ctx/checkpoints"
        assert str(settings.stats_dir) == "/tmp/ctx/stats"
        assert str(settings.inheritance_dir) == "/tmp/ctx/inheritance"

    def test_truncation_policy_normalized(self, monkeypatch):
        """Test underscores and case are accepted."""
        monkeypatch.setenv("CONTEXT_TRUNCATION_POLICY", "Sliding_Window")
        assert _settings().context_truncation_policy == "sliding-window"

    def test_truncation_policy_invalid(self, monkeypatch):
        """Test unknown policies are rejected."""
        monkeypatch.setenv("CONTEXT_TRUNCATION_POLICY", "random")
        with pytest.raises(ValidationError):
            _settings()

    def test_protected_tools_split(self):
        """Test a comma-separated list is split."""
        settings = _settings(CONTEXT_PROTECTED_TOOLS="skill, todo ,")
        assert settings.context_protected_tools == ["skill", "todo"]

    def test_get_settings_cached(self):
        """Test get_settings returns one instance."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


@pytest.mark.unit
class TestFactories:
    """Tests for the factory functions."""

    def test_create_context_config(self):
        """Test settings map onto the core config."""
        settings = _settings(
            CONTEXT_MAX_WINDOW=64_000,
            CONTEXT_WARNING_THRESHOLD=0.6,
            CONTEXT_PROTECTED_TOOLS="skill",
        )
        config = create_context_config(settings)
        assert config.max_context_window == 64_000
        assert config.warning_threshold == 0.6
        assert config.protected_tools == ("skill",)

    def test_protected_tools_default_kept(self):
        """Test unset protected tools keep the built-in list."""
        assert create_context_config(_settings()).protected_tools == DEFAULT_PROTECTED_TOOLS

    def test_threshold_registry_includes_custom(self):
        """Test custom rules are registered."""
        config = create_config(
            custom_thresholds=[
                ModelThresholdConfig(
                    model="acme-*",
                    profile="conservative",
                    thresholds=PartialThresholds(warning=0.5),
                )
            ]
        )
        registry = create_threshold_registry(config)
        assert registry.resolve("acme-large").warning == 0.5

    def test_improvements_manager(self, tmp_path):
        """Test storage directories and section settings."""
        settings = _settings(
            CONTEXT_STORAGE_DIR=str(tmp_path),
            CONTEXT_DISK_CHECKPOINT_STRATEGY="immediate",
            CONTEXT_SUMMARY_LLM_VALIDATION=True,
        )
        manager = create_improvements_manager(settings)
        assert manager.config.disk_checkpoint.strategy == "immediate"
        assert manager.config.summary_quality.enable_llm_validation is False
        assert isinstance(manager._checkpoint_storage, LocalFileStorage)
        assert manager._checkpoint_storage.root == tmp_path / "checkpoints"

    def test_budget_manager(self, tmp_path):
        """Test the budget manager uses the model and a cached token counter."""
        calls = []

        def count(text):
            calls.append(text)
            return len(text)

        settings = _settings(CONTEXT_MODEL="gpt-4o", CONTEXT_STORAGE_DIR=str(tmp_path))
        manager = create_budget_manager(settings, token_counter=count)
        assert manager.model == "gpt-4o"
        assert manager.tokenizer("abc") == 3
        assert manager.tokenizer("abc") == 3
        assert calls == ["abc"]

    def test_pack_builder(self):
        """Test evidence settings reach the pack builder."""
        builder = create_pack_builder(_settings(EVIDENCE_TOTAL_BUDGET=2_000, EVIDENCE_MIN_ITEMS=1))
        assert builder.config.total_budget == 2_000
        assert builder.config.min_evidence_items == 1
