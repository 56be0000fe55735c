"""Strategy Orchestrator - turn raw history into a bounded message set.

This is the only place that decides which lower-level algorithm runs. Each
ContextStrategy is bound to exactly one handler:

    - SLIDING_WINDOW: window manager truncation only
    - SUMMARIZATION: compress the compressible head, keep the preserved tail
    - RETRIEVAL_AUGMENTED: keep the preserved tail, fill the remaining budget
      with relevant history from the store
    - HYBRID: retrieval, then compression while still over the threshold,
      then a final truncation pass that caps the result at ``target_tokens``

Example:
    >>> manager = ContextStrategyManager(WindowManager(config), MessageCompressor())
    >>> result = await manager.apply_strategy(
    ...     messages,
    ...     StrategyOptions(strategy=ContextStrategy.HYBRID),
    ... )
    >>> print(result.tokens_saved)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TYPE_CHECKING

from keel.context.compression import (
    CompressionOptions,
    CompressionResult,
    CompressionStrategy,
    MessageCompressor,
    Summarizer,
)
from keel.context.estimator import estimate_messages
from keel.context.messages import ContextAnalysis, ContextStrategy, Message
from keel.context.retrieval import Retriever, merge_with_recent
from keel.context.window import WindowManager

if TYPE_CHECKING:
    from keel.config.settings import KeelSettings
    from keel.state.store import ConversationStore


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MANAGEMENT_MESSAGE_THRESHOLD = 20
MANAGEMENT_TOKEN_THRESHOLD = 50000

RECOMMEND_HYBRID_TOKENS = 120000
RECOMMEND_RETRIEVAL_TOKENS = 80000
RECOMMEND_SUMMARIZATION_TOKENS = 50000


# =============================================================================
# Options and Results
# =============================================================================


@dataclass
class StrategyOptions:
    """Per-call strategy options.

    Attributes:
        strategy: Strategy to apply; None uses the analysis recommendation
        enable_compression: Allow the compressor to run
        enable_retrieval: Allow the retriever to run
        conversation_id: Conversation to retrieve from
    """
    strategy: Optional[ContextStrategy] = None
    enable_compression: bool = True
    enable_retrieval: bool = False
    conversation_id: Optional[str] = None


@dataclass
class StrategyResult:
    """Outcome of one orchestration pass.

    Attributes:
        messages: Bounded, chronologically ordered messages
        strategy_used: Strategy that was applied
        original_tokens: Tokens before the pass
        final_tokens: Tokens after the pass
        analysis: Analysis of the input conversation
        compression: Compression result when the compressor ran
        retrieved_count: Messages added by retrieval
        steps: Algorithms that ran, in order
        time_ms: Time taken
    """
    messages: list[Message]
    strategy_used: ContextStrategy
    original_tokens: int
    final_tokens: int
    analysis: ContextAnalysis
    compression: Optional[CompressionResult] = None
    retrieved_count: int = 0
    steps: list[str] = field(default_factory=list)
    time_ms: float = 0.0

    @property
    def tokens_saved(self) -> int:
        return max(self.original_tokens - self.final_tokens, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy_used.value,
            "tokens_saved": self.tokens_saved,
            "stats": {
                "original_messages": self.analysis.message_count,
                "processed_messages": len(self.messages),
                "original_tokens": self.original_tokens,
                "processed_tokens": self.final_tokens,
            },
            "retrieved_count": self.retrieved_count,
            "steps": self.steps,
            "compression": self.compression.to_dict() if self.compression else None,
            "time_ms": self.time_ms,
        }


@dataclass
class PreparedContext:
    """Engine-ready messages for the next model call."""

    messages: list[dict[str, Any]]
    estimated_tokens: int
    strategy_used: ContextStrategy
    result: StrategyResult


_Handler = Callable[[Sequence[Message], StrategyOptions, StrategyResult], Awaitable[list[Message]]]


# =============================================================================
# Strategy Manager
# =============================================================================


class ContextStrategyManager:
    """Chooses and composes window, compression and retrieval passes.

    Example:
        >>> manager = ContextStrategyManager.from_settings(settings, store=store)
        >>> prepared = await manager.prepare_context(messages)
    """

    def __init__(
        self,
        window: WindowManager,
        compressor: MessageCompressor,
        retriever: Optional[Retriever] = None,
        use_priority: bool = True,
        retrieval_max_messages: int = 15,
        retrieval_min_relevance: float = 0.4,
    ) -> None:
        """Initialize the strategy manager.

        Args:
            window: Window manager holding the WindowConfig
            compressor: Message compressor
            retriever: Optional retriever; retrieval is skipped without one
            use_priority: Use priority retention for truncation passes
            retrieval_max_messages: Messages retrieval may add
            retrieval_min_relevance: Minimum relevance for retrieved messages
        """
        self._window = window
        self._compressor = compressor
        self._retriever = retriever
        self._use_priority = use_priority
        self._retrieval_max_messages = retrieval_max_messages
        self._retrieval_min_relevance = retrieval_min_relevance
        self._handlers: dict[ContextStrategy, _Handler] = {
            ContextStrategy.SLIDING_WINDOW: self._sliding_window,
            ContextStrategy.SUMMARIZATION: self._summarization,
            ContextStrategy.RETRIEVAL_AUGMENTED: self._retrieval_augmented,
            ContextStrategy.HYBRID: self._hybrid,
        }

    @classmethod
    def from_settings(
        cls,
        settings: "KeelSettings",
        store: Optional["ConversationStore"] = None,
        summarizer: Optional[Summarizer] = None,
    ) -> "ContextStrategyManager":
        """Build a manager from settings.

        Raises:
            ConfigurationError: If the context thresholds are inconsistent.
        """
        ctx = settings.context
        compressor = MessageCompressor(
            options=CompressionOptions(
                strategy=CompressionStrategy(ctx.compression_strategy),
                target_ratio=ctx.compression_target_ratio,
                preserve_errors=ctx.preserve_errors,
                preserve_decisions=ctx.preserve_decisions,
            ),
            summarizer=summarizer,
            summarizer_timeout=settings.agent.summarizer_timeout_seconds,
        )
        return cls(
            window=WindowManager(ctx.to_window_config()),
            compressor=compressor,
            retriever=Retriever(store) if store is not None else None,
            use_priority=ctx.use_priority,
            retrieval_max_messages=ctx.retrieval_max_messages,
            retrieval_min_relevance=ctx.retrieval_min_relevance,
        )

    @property
    def window(self) -> WindowManager:
        return self._window

    @property
    def compressor(self) -> MessageCompressor:
        return self._compressor

    def analyze(self, messages: Sequence[Message]) -> ContextAnalysis:
        return self._window.analyze(messages)

    async def apply_strategy(
        self,
        messages: Sequence[Message],
        options: Optional[StrategyOptions] = None,
    ) -> StrategyResult:
        """Apply one strategy to ``messages``.

        Args:
            messages: Conversation in chronological order
            options: Strategy options; defaults apply the recommended strategy

        Returns:
            StrategyResult with the bounded message list
        """
        start_time = time.perf_counter()
        options = options or StrategyOptions()
        analysis = self._window.analyze(messages)
        strategy = ContextStrategy(options.strategy or analysis.recommended_strategy)

        result = StrategyResult(
            messages=[],
            strategy_used=strategy,
            original_tokens=analysis.total_tokens,
            final_tokens=analysis.total_tokens,
            analysis=analysis,
        )
        result.messages = await self._handlers[strategy](messages, options, result)
        result.final_tokens = estimate_messages(result.messages)
        result.time_ms = (time.perf_counter() - start_time) * 1000

        if result.tokens_saved:
            logger.info(
                f"[Strategy] {strategy.value}: {len(messages)} -> {len(result.messages)} "
                f"messages, saved {result.tokens_saved} tokens"
            )
        return result

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _sliding_window(
        self,
        messages: Sequence[Message],
        options: StrategyOptions,
        result: StrategyResult,
    ) -> list[Message]:
        result.steps.append(ContextStrategy.SLIDING_WINDOW.value)
        return self._window.truncate_to_fit(messages, use_priority=self._use_priority).messages

    async def _compress(
        self,
        messages: Sequence[Message],
        result: StrategyResult,
    ) -> list[Message]:
        analysis = self._window.analyze(messages)
        compression = await self._compressor.compress(analysis.compressible)
        result.compression = compression
        result.steps.append("compression")
        return compression.messages + analysis.preserved

    async def _summarization(
        self,
        messages: Sequence[Message],
        options: StrategyOptions,
        result: StrategyResult,
    ) -> list[Message]:
        if options.enable_compression and result.analysis.needs_compression:
            return await self._compress(messages, result)
        return await self._sliding_window(messages, options, result)

    def _can_retrieve(self, options: StrategyOptions) -> bool:
        return bool(options.enable_retrieval and options.conversation_id and self._retriever)

    async def _retrieve(
        self,
        messages: Sequence[Message],
        options: StrategyOptions,
        result: StrategyResult,
    ) -> list[Message]:
        retriever, conversation_id = self._retriever, options.conversation_id
        if retriever is None or conversation_id is None:
            return list(messages)
        recent = self._window.analyze(messages).preserved
        budget = max(self._window.config.target_tokens - estimate_messages(recent), 0)
        query = messages[-1].content if messages else ""
        retrieved = await retriever.retrieve_relevant_context(
            conversation_id,
            query,
            max_messages=self._retrieval_max_messages,
            min_relevance_score=self._retrieval_min_relevance,
            max_tokens=budget,
        )
        merged = merge_with_recent(retrieved.messages, recent)
        result.retrieved_count = len(merged) - len(recent)
        result.steps.append("retrieval")
        return merged

    async def _retrieval_augmented(
        self,
        messages: Sequence[Message],
        options: StrategyOptions,
        result: StrategyResult,
    ) -> list[Message]:
        if self._can_retrieve(options):
            return await self._retrieve(messages, options, result)
        return await self._sliding_window(messages, options, result)

    async def _hybrid(
        self,
        messages: Sequence[Message],
        options: StrategyOptions,
        result: StrategyResult,
    ) -> list[Message]:
        if not result.analysis.needs_compression:
            return list(messages)

        config = self._window.config
        current = list(messages)
        if self._can_retrieve(options):
            current = await self._retrieve(current, options, result)

        if options.enable_compression and estimate_messages(current) > config.compression_threshold:
            current = await self._compress(current, result)

        result.steps.append(ContextStrategy.SLIDING_WINDOW.value)
        final = self._window.truncate_to_fit(current, use_priority=self._use_priority)
        if final.token_count > config.target_tokens:
            # Only reachable when the preserved tail alone exceeds the target
            logger.warning(
                f"[Strategy] Preserved tail exceeds target ({final.token_count} > "
                f"{config.target_tokens}), applying sliding window"
            )
            final = self._window.sliding_window(final.messages)
        return final.messages

    # -------------------------------------------------------------------------
    # Convenience
    # -------------------------------------------------------------------------

    async def prepare_context(
        self,
        messages: Sequence[Message],
        options: Optional[StrategyOptions] = None,
    ) -> PreparedContext:
        """Apply a strategy and convert the result to engine format."""
        result = await self.apply_strategy(messages, options)
        return PreparedContext(
            messages=[m.to_engine_message() for m in result.messages],
            estimated_tokens=result.final_tokens,
            strategy_used=result.strategy_used,
            result=result,
        )

    async def process_conversation_history(
        self,
        messages: Sequence[Message],
        options: Optional[StrategyOptions] = None,
    ) -> StrategyResult:
        """Apply context management to a stored history.

        Defaults to HYBRID with compression on and retrieval off.
        """
        options = options or StrategyOptions(strategy=ContextStrategy.HYBRID)
        return await self.apply_strategy(messages, options)

    def context_stats(self, messages: Sequence[Message]) -> dict[str, Any]:
        """Summary numbers for a conversation."""
        analysis = self._window.analyze(messages)
        config = self._window.config
        return {
            **analysis.to_dict(),
            "max_tokens": config.max_tokens,
            "target_tokens": config.target_tokens,
            "utilization": analysis.total_tokens / config.max_tokens,
        }


# =============================================================================
# Module Functions
# =============================================================================


def should_apply_context_management(messages: Sequence[Message]) -> bool:
    """Whether a history is large enough to be worth managing."""
    return (
        len(messages) > MANAGEMENT_MESSAGE_THRESHOLD
        or estimate_messages(messages) > MANAGEMENT_TOKEN_THRESHOLD
    )


def recommended_strategy(total_tokens: int, has_conversation_id: bool = False) -> ContextStrategy:
    """Coarse strategy recommendation from a token total."""
    if total_tokens >= RECOMMEND_HYBRID_TOKENS:
        return ContextStrategy.HYBRID
    if total_tokens >= RECOMMEND_RETRIEVAL_TOKENS and has_conversation_id:
        return ContextStrategy.RETRIEVAL_AUGMENTED
    if total_tokens >= RECOMMEND_SUMMARIZATION_TOKENS:
        return ContextStrategy.SUMMARIZATION
    return ContextStrategy.SLIDING_WINDOW


__all__ = [
    "ContextStrategyManager",
    "StrategyOptions",
    "StrategyResult",
    "PreparedContext",
    "should_apply_context_management",
    "recommended_strategy",
]
