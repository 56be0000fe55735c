"""Context engine for the Keel agent runtime.

This module keeps a conversation inside its token budget:
- estimator: Deterministic token estimates
- window: Sliding window and priority retention
- compression: Rule-based and summarizer-backed compression
- retrieval: Keyword-ranked retrieval from the conversation store
- strategies: Strategy orchestration

Usage:
    from keel.context import ContextStrategyManager, StrategyOptions

    manager = ContextStrategyManager.from_settings(settings, store=store)
    result = await manager.apply_strategy(messages, StrategyOptions())
"""

from keel.context.messages import (
    ContextAnalysis,
    ContextStrategy,
    Message,
    Role,
    TruncationResult,
    WindowConfig,
)
from keel.context.estimator import (
    estimate,
    estimate_conversation,
    estimate_message,
    estimate_messages,
    estimate_text,
)
from keel.context.window import WindowManager
from keel.context.compression import (
    CompressionOptions,
    CompressionResult,
    CompressionStrategy,
    MessageCompressor,
)
from keel.context.retrieval import RetrievalResult, Retriever
from keel.context.strategies import (
    ContextStrategyManager,
    PreparedContext,
    StrategyOptions,
    StrategyResult,
)

__all__ = [
    "ContextAnalysis",
    "ContextStrategy",
    "Message",
    "Role",
    "TruncationResult",
    "WindowConfig",
    "estimate",
    "estimate_conversation",
    "estimate_message",
    "estimate_messages",
    "estimate_text",
    "WindowManager",
    "CompressionOptions",
    "CompressionResult",
    "CompressionStrategy",
    "MessageCompressor",
    "RetrievalResult",
    "Retriever",
    "ContextStrategyManager",
    "PreparedContext",
    "StrategyOptions",
    "StrategyResult",
]
