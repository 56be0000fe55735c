"""Configuration module for the Keel agent runtime.

Usage:
    from keel.config import get_settings

    settings = get_settings()
    print(settings.context.strategy)

    # Access API keys (lazy validation)
    api_key = settings.api_keys.require_anthropic_key()
"""

from keel.config.settings import (
    KeelSettings,
    ContextSettings,
    BudgetSettings,
    CacheSettings,
    AgentSettings,
    LLMSettings,
    APIKeySettings,
    get_settings,
    reload_settings,
    clear_settings_cache,
    DEFAULT_MODEL,
    DEFAULT_SUMMARIZER_MODEL,
    DEFAULT_MAX_ITERATIONS,
)

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
