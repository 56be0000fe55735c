"""Window Manager - classify and truncate conversations against a WindowConfig.

Two truncation algorithms are provided:

    - Sliding window: walk newest to oldest and keep messages until the next
      one would exceed the target.
    - Priority retention: always keep the newest ``preserve_messages``, then
      fill the remaining budget with the highest scoring older messages and
      restore chronological order.

``analyze`` splits a conversation into preserved and compressible parts and
recommends a strategy from the threshold ladder.

Example:
    >>> manager = WindowManager(WindowConfig(target_tokens=2000, max_tokens=4000,
    ...     compression_threshold=1500, retrieval_threshold=1000))
    >>> result = manager.truncate_to_fit(messages)
    >>> print(result.token_count <= 2000)
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from keel.context.estimator import estimate_message, estimate_messages
from keel.context.messages import (
    ContextAnalysis,
    ContextStrategy,
    Message,
    TruncationResult,
    WindowConfig,
)


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

HYBRID_TRIGGER_RATIO = 0.9

RECENCY_WEIGHT = 0.4
ERROR_WEIGHT = 0.15
TOOL_USE_WEIGHT = 0.15
DECISION_WEIGHT = 0.10
CRITICAL_WEIGHT = 0.15
USER_MENTION_WEIGHT = 0.05

ERROR_MARKERS = ("error", "failed")
DECISION_MARKERS = ("decision", "important")
CRITICAL_MARKERS = ("critical", "urgent")
USER_MENTION_MARKERS = ("@user", "remember")


def _contains_any(text: str, markers: Sequence[str]) -> bool:
    return any(marker in text for marker in markers)


def calculate_importance(message: Message, index: int, total: int) -> float:
    """Score a message for priority retention.

    Recency is the message's position over the conversation length, so the
    oldest message scores 0 on recency and later messages approach 1.

    Args:
        message: Message to score.
        index: Position of the message in the conversation.
        total: Conversation length.

    Returns:
        Importance score in [0, 1].
    """
    content = message.content.lower()
    recency = index / total if total else 0.0
    score = RECENCY_WEIGHT * recency
    if _contains_any(content, ERROR_MARKERS):
        score += ERROR_WEIGHT
    if message.has_tools:
        score += TOOL_USE_WEIGHT
    if _contains_any(content, DECISION_MARKERS):
        score += DECISION_WEIGHT
    if _contains_any(content, CRITICAL_MARKERS):
        score += CRITICAL_WEIGHT
    if _contains_any(content, USER_MENTION_MARKERS):
        score += USER_MENTION_WEIGHT
    return min(score, 1.0)


# =============================================================================
# Window Manager
# =============================================================================


class WindowManager:
    """Applies window thresholds to a conversation.

    Attributes:
        config: The active WindowConfig
    """

    def __init__(self, config: Optional[WindowConfig] = None) -> None:
        self._config = config or WindowConfig()

    @property
    def config(self) -> WindowConfig:
        return self._config

    def update_config(self, **changes: Any) -> WindowConfig:
        """Replace thresholds. The new config is validated before it is applied."""
        self._config = self._config.with_changes(**changes)
        return self._config

    def calculate_importance(self, message: Message, index: int, total: int) -> float:
        """Importance for ``message``; a precomputed value wins."""
        if message.importance is not None:
            return message.importance
        return calculate_importance(message, index, total)

    def analyze(self, messages: Sequence[Message]) -> ContextAnalysis:
        """Classify a conversation and recommend a strategy.

        Args:
            messages: Conversation in chronological order.

        Returns:
            ContextAnalysis with the preserved tail and compressible head.
        """
        config = self._config
        total_tokens = estimate_messages(messages)
        split = max(len(messages) - config.preserve_messages, 0)

        if total_tokens >= HYBRID_TRIGGER_RATIO * config.max_tokens:
            recommended = ContextStrategy.HYBRID
        elif total_tokens > config.retrieval_threshold:
            recommended = ContextStrategy.RETRIEVAL_AUGMENTED
        elif total_tokens > config.compression_threshold:
            recommended = ContextStrategy.SUMMARIZATION
        else:
            recommended = ContextStrategy.SLIDING_WINDOW

        return ContextAnalysis(
            total_tokens=total_tokens,
            message_count=len(messages),
            needs_compression=total_tokens > config.compression_threshold,
            needs_retrieval=total_tokens > config.retrieval_threshold,
            recommended_strategy=recommended,
            preserved=list(messages[split:]),
            compressible=list(messages[:split]),
        )

    def sliding_window(
        self,
        messages: Sequence[Message],
        target_tokens: Optional[int] = None,
    ) -> TruncationResult:
        """Keep the newest messages that fit within ``target_tokens``."""
        target = self._config.target_tokens if target_tokens is None else target_tokens
        kept: list[Message] = []
        used = 0
        for message in reversed(messages):
            tokens = estimate_message(message)
            if used + tokens > target:
                break
            kept.append(message)
            used += tokens
        kept.reverse()
        return TruncationResult(
            messages=kept,
            token_count=used,
            messages_dropped=len(messages) - len(kept),
        )

    def priority_retention(
        self,
        messages: Sequence[Message],
        target_tokens: Optional[int] = None,
    ) -> TruncationResult:
        """Keep the preserved tail plus the most important older messages.

        The preserved tail is always kept, even when it alone exceeds the
        target. Older messages are admitted greedily by descending score and
        the final selection is returned in chronological order.
        """
        target = self._config.target_tokens if target_tokens is None else target_tokens
        total = len(messages)
        split = max(total - self._config.preserve_messages, 0)
        used = estimate_messages(messages[split:])

        # Stable sort keeps older-first order among equal scores
        ranked = sorted(
            range(split),
            key=lambda i: self.calculate_importance(messages[i], i, total),
            reverse=True,
        )
        selected: list[int] = []
        for i in ranked:
            tokens = estimate_message(messages[i])
            if used + tokens <= target:
                selected.append(i)
                used += tokens

        indices = sorted(selected) + list(range(split, total))
        kept = [messages[i] for i in indices]
        return TruncationResult(
            messages=kept,
            token_count=used,
            messages_dropped=total - len(kept),
        )

    def truncate_to_fit(
        self,
        messages: Sequence[Message],
        target_tokens: Optional[int] = None,
        use_priority: bool = True,
    ) -> TruncationResult:
        """Truncate ``messages`` to the target, unchanged if already within it."""
        target = self._config.target_tokens if target_tokens is None else target_tokens
        current = estimate_messages(messages)
        if current <= target:
            return TruncationResult(
                messages=list(messages),
                token_count=current,
                messages_dropped=0,
            )

        if use_priority:
            result = self.priority_retention(messages, target)
        else:
            result = self.sliding_window(messages, target)
        logger.debug(
            f"[Window] Truncated {len(messages)} -> {len(result.messages)} messages "
            f"({current} -> {result.token_count} tokens, priority={use_priority})"
        )
        return result


__all__ = [
    "WindowManager",
    "calculate_importance",
    "HYBRID_TRIGGER_RATIO",
]
