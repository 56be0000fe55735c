"""Retriever - fetch and rank relevant history from the conversation store.

Relevance is keyword based: stopwords are removed from the query and the
score is the fraction of remaining keywords found in a message, plus a
boost for the full query phrase and for matching domain topic terms.

Retrieval is best-effort. When the store cannot be read the retriever logs
the failure and returns an empty result.

Example:
    >>> retriever = Retriever(store)
    >>> result = await retriever.retrieve_relevant_context(
    ...     conversation_id="conv-1",
    ...     query="why did the deploy fail",
    ...     max_tokens=4000,
    ... )
    >>> for message, score in zip(result.messages, result.relevance_scores):
    ...     print(f"{score:.2f} {message.content[:40]}")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence, TYPE_CHECKING

from keel.context.compression import content_fingerprint
from keel.context.estimator import estimate_message
from keel.context.messages import Message
from keel.core.exceptions import RetrievalError
from keel.core.result import Outcome, capture, degrade

if TYPE_CHECKING:
    from keel.state.store import ConversationStore


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_MESSAGES = 20
DEFAULT_MIN_RELEVANCE = 0.3
DEFAULT_MAX_TOKENS = 10000
DEFAULT_FETCH_LIMIT = 200
SIMILAR_ERROR_MIN_RELEVANCE = 0.4

PHRASE_BOOST = 0.3
TOPIC_TERM_BOOST = 0.1
MIN_KEYWORD_LENGTH = 3

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "what", "how", "why", "when", "where",
})

TOPIC_CLUSTERS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = (
    (re.compile(r"error|bug|issue|problem"), ("error", "exception", "failed", "issue")),
    (re.compile(r"deploy"), ("deploy", "release", "production")),
    (re.compile(r"api|endpoint"), ("api", "endpoint", "request", "response")),
    (re.compile(r"database|db|query"), ("database", "query", "sql", "table")),
    (re.compile(r"performance|slow|latency"), ("performance", "slow", "latency", "optimize")),
    (re.compile(r"security|auth|permission"), ("security", "auth", "permission", "access")),
)


# =============================================================================
# Scoring
# =============================================================================


def extract_keywords(query: str) -> list[str]:
    """Lowercased query words without stopwords or very short words."""
    return [
        word for word in query.lower().split()
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOPWORDS
    ]


def topic_terms(query: str) -> list[str]:
    """Domain terms implied by the query."""
    lowered = query.lower()
    terms: list[str] = []
    for pattern, cluster in TOPIC_CLUSTERS:
        if pattern.search(lowered):
            terms.extend(cluster)
    return terms


def keyword_relevance(query: str, content: str) -> float:
    """Score ``content`` against ``query`` in [0, 1].

    Returns 0 when the query has no usable keywords.
    """
    keywords = extract_keywords(query)
    if not keywords:
        return 0.0

    query_lower = query.lower().strip()
    content_lower = content.lower()
    matches = sum(1 for keyword in keywords if keyword in content_lower)
    score = matches / len(keywords)
    if query_lower and query_lower in content_lower:
        score += PHRASE_BOOST
    for term in topic_terms(query_lower):
        if term in content_lower:
            score += TOPIC_TERM_BOOST
    return min(score, 1.0)


# =============================================================================
# Retrieval Result
# =============================================================================


@dataclass
class RetrievalResult:
    """Relevant messages in chronological order.

    Attributes:
        messages: Admitted messages, oldest first
        relevance_scores: Score of each message, aligned with ``messages``
        estimated_tokens: Token estimate of ``messages``
        candidates_scored: Messages read from the store
    """
    messages: list[Message] = field(default_factory=list)
    relevance_scores: list[float] = field(default_factory=list)
    estimated_tokens: int = 0
    candidates_scored: int = 0

    @property
    def total_retrieved(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_retrieved": self.total_retrieved,
            "relevance_scores": self.relevance_scores,
            "estimated_tokens": self.estimated_tokens,
            "candidates_scored": self.candidates_scored,
        }


# =============================================================================
# Retriever
# =============================================================================


class Retriever:
    """Keyword-ranked retrieval over a ConversationStore.

    Example:
        >>> retriever = Retriever(MemoryConversationStore())
        >>> result = await retriever.retrieve_relevant_context("c1", "database timeout")
    """

    def __init__(
        self,
        store: ConversationStore,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
    ) -> None:
        """Initialize the retriever.

        Args:
            store: Conversation store to read from
            fetch_limit: Most recent messages scored per retrieval
        """
        self._store = store
        self._fetch_limit = fetch_limit

    async def _fetch(self, conversation_id: str, limit: Optional[int]) -> Outcome[list[Message]]:
        return await capture(
            self._store.list_messages(conversation_id, limit=limit),
            lambda msg: RetrievalError(msg, conversation_id=conversation_id),
        )

    async def _history(self, conversation_id: str, limit: Optional[int]) -> list[Message]:
        outcome = await self._fetch(conversation_id, limit)
        return degrade(outcome, list, f"[Retriever] store read for {conversation_id}")

    async def retrieve_relevant_context(
        self,
        conversation_id: str,
        query: str,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        min_relevance_score: float = DEFAULT_MIN_RELEVANCE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> RetrievalResult:
        """Retrieve the messages most relevant to ``query``.

        Candidates below ``min_relevance_score`` are discarded, the rest are
        ranked by score and admitted until the next one would exceed
        ``max_tokens`` or ``max_messages`` are admitted. The admitted set is
        returned in chronological order.

        Args:
            conversation_id: Conversation to search
            query: Free-text query, usually the latest user message
            max_messages: Maximum messages to return
            min_relevance_score: Minimum score for a candidate
            max_tokens: Token budget for the returned messages

        Returns:
            RetrievalResult, empty when the store is unavailable
        """
        candidates = await self._history(conversation_id, self._fetch_limit)
        scored = [
            (index, keyword_relevance(query, message.content))
            for index, message in enumerate(candidates)
        ]
        ranked = sorted(
            (item for item in scored if item[1] >= min_relevance_score),
            key=lambda item: item[1],
            reverse=True,
        )

        admitted: list[tuple[int, float]] = []
        used = 0
        for index, score in ranked[:max(max_messages, 0)]:
            tokens = estimate_message(candidates[index])
            if used + tokens > max_tokens:
                break
            admitted.append((index, score))
            used += tokens

        admitted.sort(key=lambda item: item[0])
        logger.debug(
            f"[Retriever] {len(admitted)}/{len(candidates)} messages admitted "
            f"for {conversation_id} ({used} tokens)"
        )
        return RetrievalResult(
            messages=[candidates[i] for i, _ in admitted],
            relevance_scores=[score for _, score in admitted],
            estimated_tokens=used,
            candidates_scored=len(candidates),
        )

    async def find_similar_errors(
        self,
        conversation_id: str,
        error_message: str,
        max_results: int = 5,
    ) -> list[Message]:
        """Earlier messages that look like the same failure."""
        result = await self.retrieve_relevant_context(
            conversation_id,
            error_message,
            max_messages=max_results,
            min_relevance_score=SIMILAR_ERROR_MIN_RELEVANCE,
        )
        return [
            m for m in result.messages
            if "error" in m.content.lower() or "failed" in m.content.lower()
        ]

    async def find_topic_messages(
        self,
        conversation_id: str,
        topic: str,
        max_results: int = 10,
    ) -> list[Message]:
        result = await self.retrieve_relevant_context(
            conversation_id,
            topic,
            max_messages=max_results,
            min_relevance_score=DEFAULT_MIN_RELEVANCE,
        )
        return result.messages

    async def messages_with_tool(
        self,
        conversation_id: str,
        tool_name: Optional[str] = None,
        max_results: int = 20,
    ) -> list[Message]:
        """Most recent messages that used tools, optionally one tool only."""
        history = await self._history(conversation_id, None)
        matching = [
            m for m in history
            if m.has_tools and (tool_name is None or tool_name in (m.tools_used or ()))
        ]
        return matching[-max_results:] if max_results > 0 else []

    async def messages_in_time_range(
        self,
        conversation_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Message]:
        """Messages with ``start <= timestamp <= end``."""
        history = await self._history(conversation_id, None)
        return [m for m in history if start <= m.timestamp <= end]


def merge_with_recent(
    retrieved: Sequence[Message],
    recent: Sequence[Message],
) -> list[Message]:
    """Combine retrieved history with the recent tail.

    Recent messages are always kept. Retrieved messages that duplicate a
    recent one (by normalized content) or each other are dropped, as are
    retrieved messages newer than the start of the recent tail, so the
    combined list stays chronological.
    """
    seen = {content_fingerprint(m.content) for m in recent}
    cutoff = recent[0].timestamp if recent else None
    merged: list[Message] = []
    for message in sorted(retrieved, key=lambda m: m.timestamp):
        key = content_fingerprint(message.content)
        if key in seen or (cutoff is not None and message.timestamp > cutoff):
            continue
        seen.add(key)
        merged.append(message)
    return merged + list(recent)


__all__ = [
    "Retriever",
    "RetrievalResult",
    "keyword_relevance",
    "extract_keywords",
    "topic_terms",
    "merge_with_recent",
    "STOPWORDS",
]
