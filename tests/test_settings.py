"""Tests for Keel settings and window configuration.

Test Coverage:
- Defaults of every settings group
- Environment overrides with the KEEL_ prefix and nested delimiter
- Threshold ordering validation
- Strategy and policy name normalization
- Secret masking in exported settings
- WindowConfig construction-time validation
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from keel.config.settings import (
    ContextSettings,
    KeelSettings,
    get_settings,
    reload_settings,
)
from keel.context.messages import WindowConfig
from keel.core.exceptions import ConfigurationError


# =============================================================================
# Test: Defaults
# =============================================================================


class TestSettingsDefaults:
    """Test default configuration values."""

    def test_context_defaults(self):
        settings = KeelSettings()
        assert settings.context.max_tokens == 180000
        assert settings.context.target_tokens == 150000
        assert settings.context.preserve_messages == 10
        assert settings.context.strategy == "hybrid"

    def test_agent_defaults(self):
        settings = KeelSettings()
        assert settings.agent.max_iterations == 20
        assert settings.agent.tool_execution_policy == "sequential"
        assert settings.agent.stream_queue_size == 100

    def test_window_config_from_settings(self):
        config = KeelSettings().context.to_window_config()
        assert isinstance(config, WindowConfig)
        assert config.compression_threshold == 120000
        assert config.retrieval_threshold == 100000


# =============================================================================
# Test: Environment Overrides
# =============================================================================


class TestEnvironmentOverrides:
    """Test loading settings from KEEL_* variables."""

    def test_nested_override(self, monkeypatch):
        monkeypatch.setenv("KEEL_AGENT__MAX_ITERATIONS", "7")
        settings = reload_settings()
        assert settings.agent.max_iterations == 7

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_invalid_environment_raises_configuration_error(self, monkeypatch):
        monkeypatch.setenv("KEEL_LOG_LEVEL", "chatty")
        with pytest.raises(ConfigurationError):
            reload_settings()


# =============================================================================
# Test: Validation
# =============================================================================


class TestSettingsValidation:
    """Test field and model validators."""

    def test_target_must_be_below_max(self):
        with pytest.raises(ValidationError, match="target_tokens must be less than max_tokens"):
            ContextSettings(max_tokens=1000, target_tokens=1000)

    def test_threshold_ordering(self):
        with pytest.raises(ValidationError, match="retrieval_threshold"):
            ContextSettings(
                max_tokens=1000,
                target_tokens=800,
                compression_threshold=500,
                retrieval_threshold=600,
            )

    def test_strategy_name_is_normalized(self):
        assert ContextSettings(strategy="Sliding_Window").strategy == "sliding-window"

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError, match="Invalid context strategy"):
            ContextSettings(strategy="magic")

    def test_log_level_is_uppercased(self):
        assert KeelSettings(log_level="debug").log_level == "DEBUG"

    def test_to_dict_masks_api_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
        data = KeelSettings().to_dict()
        assert data["api_keys"]["anthropic_api_key"] == "***MASKED***"

    def test_require_key_without_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        settings = KeelSettings()
        settings.api_keys.anthropic_api_key = None
        with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
            settings.api_keys.require_anthropic_key()


# =============================================================================
# Test: WindowConfig
# =============================================================================


class TestWindowConfig:
    """Test WindowConfig invariants."""

    def test_valid_config(self):
        config = WindowConfig(
            max_tokens=1000,
            target_tokens=800,
            preserve_messages=2,
            compression_threshold=600,
            retrieval_threshold=400,
        )
        assert config.target_tokens == 800

    def test_target_not_below_max(self):
        with pytest.raises(ConfigurationError, match="target_tokens"):
            WindowConfig(max_tokens=1000, target_tokens=1000,
                         compression_threshold=500, retrieval_threshold=400)

    def test_compression_above_target(self):
        with pytest.raises(ConfigurationError, match="thresholds"):
            WindowConfig(max_tokens=1000, target_tokens=800,
                         compression_threshold=900, retrieval_threshold=400)

    def test_negative_preserve_messages(self):
        with pytest.raises(ConfigurationError):
            WindowConfig(preserve_messages=-1)

    def test_with_changes_revalidates(self):
        config = WindowConfig()
        with pytest.raises(ConfigurationError):
            config.with_changes(target_tokens=config.max_tokens + 1)
