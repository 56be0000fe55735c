"""Pydantic settings for the Keel agent runtime.

This module defines the main KeelSettings class that loads configuration from
environment variables and .env files. It uses pydantic-settings for automatic
environment variable parsing and validation.

Settings Categories:
    - Core: Runtime-level settings (debug mode, log level)
    - Context: Window thresholds and strategy selection
    - Budget: Per-conversation token ceilings
    - Cache: Response cache capacity and TTL
    - Agent: Turn loop limits, timeouts and tool execution policy
    - LLM: Reasoning engine and summarizer models
    - API Keys: External service credentials

Environment Variables:
    KEEL_DEBUG: Enable debug mode (default: false)
    KEEL_LOG_LEVEL: Logging level (default: INFO)
    KEEL_CONTEXT__TARGET_TOKENS: Target context size (default: 150000)
    KEEL_CONTEXT__STRATEGY: Context strategy (default: hybrid)
    KEEL_AGENT__MAX_ITERATIONS: Turn loop iteration cap (default: 20)
    KEEL_AGENT__TOOL_EXECUTION_POLICY: sequential or concurrent
    ANTHROPIC_API_KEY: API key for Anthropic Claude

Usage:
    from keel.config.settings import get_settings

    settings = get_settings()
    print(settings.context.target_tokens)
    print(settings.agent.max_iterations)
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from keel.core.exceptions import ConfigurationError


# =============================================================================
# Default Constants
# =============================================================================

DEFAULT_MODEL = "claude-sonnet-4-20250514"
"""Default reasoning engine model."""

DEFAULT_SUMMARIZER_MODEL = "claude-3-5-haiku-latest"
"""Fast model used for conversation summaries."""

DEFAULT_MAX_ITERATIONS = 20
"""Default cap on model calls per request."""

CONTEXT_STRATEGIES = {"sliding-window", "summarization", "retrieval-augmented", "hybrid"}
COMPRESSION_STRATEGIES = {"simple", "ai-summarization", "hybrid"}
TOOL_EXECUTION_POLICIES = {"sequential", "concurrent"}


def _normalize_choice(value: str, valid: set[str], label: str) -> str:
    normalized = value.lower().strip().replace("_", "-")
    if normalized not in valid:
        raise ValueError(
            f"Invalid {label} '{value}'. Must be one of: {', '.join(sorted(valid))}"
        )
    return normalized


# =============================================================================
# Nested Settings Models
# =============================================================================


class ContextSettings(BaseModel):
    """Settings for context window management.

    Thresholds must satisfy
    ``retrieval_threshold <= compression_threshold <= target_tokens < max_tokens``.

    Attributes:
        max_tokens: Hard context window size.
        target_tokens: Size strategies aim to produce.
        preserve_messages: Newest messages that are never dropped or rewritten.
        compression_threshold: Total above which summarization is recommended.
        retrieval_threshold: Total above which retrieval is recommended.
        strategy: Default context strategy.
        enable_compression: Allow compression inside strategies.
        enable_retrieval: Allow retrieval inside strategies.
        use_priority: Use priority retention for sliding-window truncation.
        retrieval_max_messages: Messages the retriever may return.
        retrieval_min_relevance: Minimum relevance score for retrieval.
        compression_strategy: Default compressor strategy.
        compression_target_ratio: Desired compression ratio.
        preserve_errors: Keep error messages verbatim during compression.
        preserve_decisions: Keep decision messages verbatim during compression.
    """

    max_tokens: int = Field(default=180000, ge=1, description="Hard context window size")
    target_tokens: int = Field(default=150000, ge=1, description="Target context size")
    preserve_messages: int = Field(
        default=10,
        ge=0,
        description="Newest messages that are always kept verbatim"
    )
    compression_threshold: int = Field(
        default=120000,
        ge=0,
        description="Token total that triggers summarization"
    )
    retrieval_threshold: int = Field(
        default=100000,
        ge=0,
        description="Token total that triggers retrieval"
    )
    strategy: str = Field(default="hybrid", description="Default context strategy")
    enable_compression: bool = Field(default=True, description="Allow compression")
    enable_retrieval: bool = Field(default=False, description="Allow retrieval")
    use_priority: bool = Field(
        default=True,
        description="Use priority retention when truncating"
    )
    retrieval_max_messages: int = Field(
        default=15,
        ge=1,
        description="Max messages returned by retrieval"
    )
    retrieval_min_relevance: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Minimum relevance score for retrieval"
    )
    compression_strategy: str = Field(
        default="simple",
        description="Compressor strategy: simple, ai-summarization or hybrid"
    )
    compression_target_ratio: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Desired compression ratio"
    )
    preserve_errors: bool = Field(default=True, description="Keep error messages")
    preserve_decisions: bool = Field(default=True, description="Keep decision messages")

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate context strategy name."""
        return _normalize_choice(v, CONTEXT_STRATEGIES, "context strategy")

    @field_validator("compression_strategy")
    @classmethod
    def validate_compression_strategy(cls, v: str) -> str:
        """Validate compressor strategy name."""
        return _normalize_choice(v, COMPRESSION_STRATEGIES, "compression strategy")

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ContextSettings":
        """Enforce threshold ordering."""
        if self.target_tokens >= self.max_tokens:
            raise ValueError("target_tokens must be less than max_tokens")
        if self.compression_threshold > self.target_tokens:
            raise ValueError("compression_threshold must not exceed target_tokens")
        if self.retrieval_threshold > self.compression_threshold:
            raise ValueError("retrieval_threshold must not exceed compression_threshold")
        return self

    def to_window_config(self) -> Any:
        """Build the immutable WindowConfig used by the context engine."""
        from keel.context.messages import WindowConfig

        return WindowConfig(
            max_tokens=self.max_tokens,
            target_tokens=self.target_tokens,
            preserve_messages=self.preserve_messages,
            compression_threshold=self.compression_threshold,
            retrieval_threshold=self.retrieval_threshold,
        )


class BudgetSettings(BaseModel):
    """Settings for per-conversation token budgets.

    Attributes:
        max_tokens_per_conversation: Ceiling enforced before each model call.
        max_tokens_per_message: Ceiling for a single message.
        max_tokens_per_request: Ceiling for one engine request.
        warning_threshold: Fraction of the limit that marks "near limit".
        min_messages: Fewest messages truncation may leave.
    """

    max_tokens_per_conversation: int = Field(
        default=100000,
        ge=1,
        description="Token ceiling per conversation"
    )
    max_tokens_per_message: int = Field(
        default=8192,
        ge=1,
        description="Token ceiling per message"
    )
    max_tokens_per_request: int = Field(
        default=200000,
        ge=1,
        description="Token ceiling per request"
    )
    warning_threshold: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Fraction of budget that triggers warnings"
    )
    min_messages: int = Field(
        default=2,
        ge=1,
        description="Fewest messages truncation may keep"
    )


class CacheSettings(BaseModel):
    """Settings for the response cache."""

    enabled: bool = Field(default=True, description="Enable the response cache")
    max_entries: int = Field(default=1000, ge=1, description="Cache capacity")
    ttl_minutes: float = Field(default=60, gt=0, description="Entry time-to-live")


class AgentSettings(BaseModel):
    """Settings for the agent turn loop.

    Attributes:
        max_iterations: Hard cap on model calls per request.
        max_output_tokens: Output token limit per model call.
        thinking_budget: Extended thinking budget, if enabled.
        model_timeout_seconds: Ceiling for one model call.
        tool_timeout_seconds: Ceiling for one tool invocation.
        summarizer_timeout_seconds: Ceiling for one summarizer call.
        tool_execution_policy: Run same-turn tools sequentially or concurrently.
        max_concurrent_tools: Concurrency bound for the concurrent policy.
        stream_queue_size: Capacity of the caller-facing event channel.
        tool_result_max_tokens: Tool output size kept in context.
        tool_result_preview_chars: Characters shown in tool_result events.
        verbose: Include tool inputs in tool events.
    """

    max_iterations: int = Field(
        default=DEFAULT_MAX_ITERATIONS,
        ge=1,
        le=200,
        description="Maximum model calls per request"
    )
    max_output_tokens: int = Field(
        default=8192,
        ge=1,
        le=200000,
        description="Output tokens per model call"
    )
    thinking_budget: Optional[int] = Field(
        default=None,
        ge=1024,
        description="Extended thinking budget tokens"
    )
    model_timeout_seconds: float = Field(default=60.0, gt=0, description="Model call timeout")
    tool_timeout_seconds: float = Field(default=30.0, gt=0, description="Tool call timeout")
    summarizer_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Summarizer call timeout"
    )
    tool_execution_policy: str = Field(
        default="sequential",
        description="Tool execution policy: sequential or concurrent"
    )
    max_concurrent_tools: int = Field(default=4, ge=1, description="Concurrent tool bound")
    stream_queue_size: int = Field(default=100, ge=1, description="Event channel capacity")
    tool_result_max_tokens: int = Field(
        default=4000,
        ge=1,
        description="Tool output tokens kept in context"
    )
    tool_result_preview_chars: int = Field(
        default=500,
        ge=0,
        description="Characters of tool output streamed as preview"
    )
    verbose: bool = Field(default=False, description="Stream tool inputs")

    @field_validator("tool_execution_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        """Validate tool execution policy."""
        return _normalize_choice(v, TOOL_EXECUTION_POLICIES, "tool execution policy")


class LLMSettings(BaseModel):
    """Settings for the reasoning engine and summarizer."""

    model: str = Field(default=DEFAULT_MODEL, description="Reasoning engine model")
    summarizer_model: str = Field(
        default=DEFAULT_SUMMARIZER_MODEL,
        description="Model used for conversation summaries"
    )
    summarizer_max_tokens: int = Field(
        default=1000,
        ge=1,
        description="Output tokens for summaries"
    )


class APIKeySettings(BaseSettings):
    """Settings for external API keys.

    These are loaded WITHOUT a prefix since they use standard env var names.

    Attributes:
        anthropic_api_key: API key for Anthropic Claude (required for LLM).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="Anthropic API key"
    )

    def require_anthropic_key(self) -> str:
        """Get the Anthropic API key, raising an error if not set.

        Returns:
            The Anthropic API key.

        Raises:
            ConfigurationError: If the Anthropic API key is not configured.
        """
        if not self.anthropic_api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY environment variable is required for LLM features. "
                "Please set it in your environment or .env file.",
                config_key="ANTHROPIC_API_KEY",
            )
        return self.anthropic_api_key


# =============================================================================
# Main Settings Class
# =============================================================================


class KeelSettings(BaseSettings):
    """Main settings class for Keel runtime configuration.

    Environment variables use the KEEL_ prefix (except for API keys which
    use standard names like ANTHROPIC_API_KEY). Nested groups are set with a
    double underscore, e.g. ``KEEL_CONTEXT__TARGET_TOKENS=90000``.
    """

    model_config = SettingsConfigDict(
        env_prefix="KEEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    context: ContextSettings = Field(
        default_factory=ContextSettings,
        description="Context window configuration"
    )
    budget: BudgetSettings = Field(
        default_factory=BudgetSettings,
        description="Token budget configuration"
    )
    cache: CacheSettings = Field(
        default_factory=CacheSettings,
        description="Response cache configuration"
    )
    agent: AgentSettings = Field(
        default_factory=AgentSettings,
        description="Agent loop configuration"
    )
    llm: LLMSettings = Field(
        default_factory=LLMSettings,
        description="LLM configuration"
    )

    # API keys (loaded separately without prefix)
    api_keys: APIKeySettings = Field(
        default_factory=APIKeySettings,
        description="API key configuration"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        normalized = v.upper()
        if normalized not in valid_levels:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        return normalized

    def to_dict(self) -> dict[str, Any]:
        """Export settings as a dictionary with masked secrets."""
        data = self.model_dump()
        if "api_keys" in data:
            for key in data["api_keys"]:
                if data["api_keys"][key]:
                    data["api_keys"][key] = "***MASKED***"
        return data


# =============================================================================
# Singleton Pattern
# =============================================================================

_settings_instance: Optional[KeelSettings] = None


def _build_settings() -> KeelSettings:
    try:
        return KeelSettings()
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid Keel configuration",
            validation_details=str(e),
        ) from e


def get_settings() -> KeelSettings:
    """Get the cached settings instance.

    Returns:
        The cached KeelSettings instance.

    Raises:
        ConfigurationError: If the environment holds invalid settings.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = _build_settings()
    return _settings_instance


def reload_settings() -> KeelSettings:
    """Reload settings from environment, clearing the cache.

    Example:
        ```python
        import os
        os.environ["KEEL_DEBUG"] = "true"
        settings = reload_settings()
        assert settings.debug is True
        ```
    """
    global _settings_instance
    _settings_instance = _build_settings()
    return _settings_instance


def clear_settings_cache() -> None:
    """Clear the settings cache without creating a new instance."""
    global _settings_instance
    _settings_instance = None


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "KeelSettings",
    "ContextSettings",
    "BudgetSettings",
    "CacheSettings",
    "AgentSettings",
    "LLMSettings",
    "APIKeySettings",
    "get_settings",
    "reload_settings",
    "clear_settings_cache",
    "DEFAULT_MODEL",
    "DEFAULT_SUMMARIZER_MODEL",
    "DEFAULT_MAX_ITERATIONS",
]
