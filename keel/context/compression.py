"""Compressor - reduce a batch of messages to a smaller representation.

Compression Strategies:
    - SIMPLE: Keep must-preserve messages verbatim and fold the rest into one
      rule-based summary message built from extracted key sentences
    - AI_SUMMARIZATION: Ask an external summarizer for a 2-4 paragraph summary
      of the compressible messages; falls back to SIMPLE on any failure
    - HYBRID: SIMPLE first, then AI_SUMMARIZATION if more than five messages
      remain and a summarizer is configured

Must-preserve messages are never altered: messages mentioning errors or
decisions (when enabled), messages that used tools, and short messages.

Example:
    >>> from keel.context.compression import MessageCompressor, CompressionStrategy
    >>>
    >>> compressor = MessageCompressor(summarizer=anthropic_summarizer)
    >>> result = await compressor.compress(
    ...     messages,
    ...     strategy=CompressionStrategy.HYBRID,
    ... )
    >>> print(f"Saved {result.compression_ratio:.0%}")
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from keel.context.estimator import compression_ratio, estimate_messages
from keel.context.messages import Message, Role
from keel.core.exceptions import SummarizationError
from keel.core.result import Outcome, capture, degrade


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SHORT_MESSAGE_CHARS = 200
LONG_MESSAGE_CHARS = 500
KEY_POINT_CHARS = 150
LONG_MESSAGE_PREFIX_CHARS = 100
HYBRID_AI_MIN_MESSAGES = 5
SIMPLE_SUMMARY_IMPORTANCE = 0.8
AI_SUMMARY_IMPORTANCE = 0.9
FINGERPRINT_CHARS = 100

ERROR_KEYWORDS = ("error", "failed", "exception")
DECISION_KEYWORDS = ("decision", "important", "critical")

KEY_SENTENCE_PATTERNS = (
    re.compile(r"(?:decided|concluded|determined) that (.+)", re.IGNORECASE),
    re.compile(r"(?:issue|problem|error)(?::| is) (.+)", re.IGNORECASE),
    re.compile(r"(?:solution|fix|resolved)(?::| is) (.+)", re.IGNORECASE),
    re.compile(r"(?:important|note|remember): (.+)", re.IGNORECASE),
)

SIMPLE_SUMMARY_HEADER = "[Previous Conversation Summary]"
EMPTY_SUMMARY = "[Previous conversation - no critical details]"
AI_SUMMARY_HEADER = "[Conversation Summary]"

SUMMARY_PROMPT = """Please provide a concise summary of the following conversation, preserving:
- Key decisions made
- Important errors or issues mentioned
- Critical context needed for future messages
- Tool usage and results

Conversation:
{transcript}

Provide a summary in 2-4 paragraphs."""


Summarizer = Callable[[str], Awaitable[str]]
"""Async callable turning a prompt into summary text."""


# =============================================================================
# Compression Strategy Enum
# =============================================================================


class CompressionStrategy(str, Enum):
    """Compression strategy to apply.

    Attributes:
        SIMPLE: Rule-based key sentence extraction
        AI_SUMMARIZATION: External summarizer with simple fallback
        HYBRID: Simple, then summarizer while many messages remain
    """
    SIMPLE = "simple"
    AI_SUMMARIZATION = "ai-summarization"
    HYBRID = "hybrid"


# =============================================================================
# Options and Result
# =============================================================================


@dataclass
class CompressionOptions:
    """Options controlling what the compressor keeps.

    Attributes:
        strategy: Default strategy for ``compress``
        target_ratio: Desired fraction of tokens removed, reported only
        preserve_errors: Keep error messages verbatim
        preserve_decisions: Keep decision messages verbatim
    """
    strategy: CompressionStrategy = CompressionStrategy.SIMPLE
    target_ratio: float = 0.5
    preserve_errors: bool = True
    preserve_decisions: bool = True


@dataclass
class CompressionResult:
    """Result of a compression operation.

    Attributes:
        original_tokens: Token count before compression
        compressed_tokens: Token count after compression
        compression_ratio: ``(original - compressed) / original``
        summary_text: Summary text that replaced the compressible messages
        messages: Compressed message list
        strategy_used: Strategy that produced the messages
        fell_back: True when the summarizer path degraded to SIMPLE
        time_ms: Time taken for compression
    """
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    summary_text: str
    messages: list[Message] = field(default_factory=list)
    strategy_used: CompressionStrategy = CompressionStrategy.SIMPLE
    fell_back: bool = False
    time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
            "summary_text": self.summary_text,
            "message_count": len(self.messages),
            "strategy_used": self.strategy_used.value,
            "fell_back": self.fell_back,
            "time_ms": self.time_ms,
        }


@dataclass
class _Compressed:
    messages: list[Message]
    summary_text: str
    fell_back: bool = False


# =============================================================================
# Helpers
# =============================================================================


def content_fingerprint(content: str) -> str:
    """Hash of the normalized first 100 characters of ``content``."""
    normalized = re.sub(r"\s+", " ", content.lower().strip())[:FINGERPRINT_CHARS]
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def remove_redundancy(messages: Sequence[Message]) -> list[Message]:
    """Drop messages whose fingerprint was already seen, keeping order."""
    seen: set[str] = set()
    unique: list[Message] = []
    for message in messages:
        key = content_fingerprint(message.content)
        if key not in seen:
            seen.add(key)
            unique.append(message)
    return unique


def compress_tool_result(text: str, max_length: int = 500) -> str:
    """Shorten a tool result, keeping JSON structure readable.

    Arrays keep their first element and a count, objects keep their first
    three keys and a marker for the rest, anything else is cut with an
    ellipsis.
    """
    if len(text) <= max_length:
        return text
    try:
        parsed = json.loads(text)
    except ValueError:
        return text[:max_length] + "..."

    if isinstance(parsed, list):
        first = json.dumps(parsed[0], separators=(",", ":")) if parsed else ""
        more = " ..." if len(parsed) > 1 else ""
        return f"[Array with {len(parsed)} items] {first}{more}"
    if isinstance(parsed, dict):
        keys = list(parsed)
        kept = {k: parsed[k] for k in keys[:3]}
        if len(keys) > 3:
            kept["..."] = f"{len(keys) - 3} more fields"
        return json.dumps(kept, separators=(",", ":"))
    return text[:max_length] + "..."


def render_transcript(messages: Sequence[Message]) -> str:
    """Flatten messages into ``[role]: content`` paragraphs."""
    return "\n\n".join(f"[{m.role.value}]: {m.content}" for m in messages)


# =============================================================================
# Strategies
# =============================================================================


class SimpleStrategy:
    """Rule-based compression without an external model."""

    def __init__(self, options: CompressionOptions) -> None:
        self._options = options

    def should_preserve(self, message: Message) -> bool:
        """Whether ``message`` must be kept verbatim."""
        content = message.content.lower()
        if self._options.preserve_errors and any(k in content for k in ERROR_KEYWORDS):
            return True
        if self._options.preserve_decisions and any(k in content for k in DECISION_KEYWORDS):
            return True
        if message.has_tools or message.blocks:
            return True
        return len(message.content) < SHORT_MESSAGE_CHARS

    def extract_key_information(self, message: Message) -> Optional[str]:
        """Pull one short key sentence out of ``message``, if any."""
        role = message.role.value
        for pattern in KEY_SENTENCE_PATTERNS:
            match = pattern.search(message.content)
            if match:
                return f"{role}: {match.group(1)[:KEY_POINT_CHARS]}"
        if len(message.content) > LONG_MESSAGE_CHARS:
            return f"{role}: {message.content[:LONG_MESSAGE_PREFIX_CHARS]}..."
        return None

    def compress(self, messages: Sequence[Message]) -> _Compressed:
        preserved: list[Message] = []
        compressible: list[Message] = []
        key_points: list[str] = []

        for message in messages:
            if self.should_preserve(message):
                preserved.append(message)
                continue
            compressible.append(message)
            key_info = self.extract_key_information(message)
            if key_info:
                key_points.append(key_info)

        if not compressible:
            return _Compressed(messages=list(messages), summary_text="")

        if key_points:
            summary_text = SIMPLE_SUMMARY_HEADER + "\n" + "\n".join(key_points)
        else:
            summary_text = EMPTY_SUMMARY

        summary = Message(
            role=Role.ASSISTANT,
            content=summary_text,
            timestamp=compressible[-1].timestamp,
            importance=SIMPLE_SUMMARY_IMPORTANCE,
            compressed=True,
            summary_of=f"{len(compressible)} messages",
        )
        return _Compressed(messages=[summary, *preserved], summary_text=summary_text)


class SummarizeStrategy:
    """Summarizer-backed compression.

    The external call is a best-effort boundary: it returns an Outcome and
    never raises, so callers choose their own fallback.
    """

    def __init__(
        self,
        simple: SimpleStrategy,
        summarizer: Optional[Summarizer] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._simple = simple
        self._summarizer = summarizer
        self._timeout = timeout_seconds

    @property
    def available(self) -> bool:
        return self._summarizer is not None

    async def _summarize(self, prompt: str) -> str:
        if self._summarizer is None:
            raise SummarizationError("No summarizer configured")
        try:
            text = await asyncio.wait_for(self._summarizer(prompt), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise SummarizationError(f"Summarizer timed out after {self._timeout}s") from e
        if not text or not text.strip():
            raise SummarizationError("Summarizer returned empty text")
        return text.strip()

    async def compress(self, messages: Sequence[Message]) -> Outcome[_Compressed]:
        critical = [m for m in messages if self._simple.should_preserve(m)]
        compressible = [m for m in messages if not self._simple.should_preserve(m)]
        if not compressible:
            return Outcome.success(_Compressed(messages=list(messages), summary_text=""))

        prompt = SUMMARY_PROMPT.format(transcript=render_transcript(compressible))
        outcome = await capture(self._summarize(prompt), SummarizationError)
        if not outcome.ok:
            return Outcome.failure(outcome.error)  # type: ignore[arg-type]

        summary_text = outcome.value or ""
        summary = Message(
            role=Role.ASSISTANT,
            content=f"{AI_SUMMARY_HEADER}\n{summary_text}",
            timestamp=compressible[-1].timestamp,
            importance=AI_SUMMARY_IMPORTANCE,
            compressed=True,
            summary_of=f"{len(compressible)} messages",
        )
        return Outcome.success(
            _Compressed(messages=[summary, *critical], summary_text=summary_text)
        )


# =============================================================================
# Message Compressor
# =============================================================================


class MessageCompressor:
    """Compression manager.

    Features:
        - Three interchangeable strategies
        - Silent fallback from summarizer to rule-based compression
        - Never returns more tokens than it was given
        - Metrics tracking

    Example:
        >>> compressor = MessageCompressor()
        >>> result = await compressor.compress(messages)
        >>> assert result.compressed_tokens <= result.original_tokens
    """

    def __init__(
        self,
        options: Optional[CompressionOptions] = None,
        summarizer: Optional[Summarizer] = None,
        summarizer_timeout: float = 30.0,
    ) -> None:
        """Initialize the compressor.

        Args:
            options: Preservation options and default strategy
            summarizer: Optional async function for AI summarization
            summarizer_timeout: Ceiling for one summarizer call in seconds
        """
        self._options = options or CompressionOptions()
        self._summarizer = summarizer
        self._summarizer_timeout = summarizer_timeout
        self._build_strategies()

        # Metrics
        self._total_compressions: int = 0
        self._fallbacks: int = 0
        self._total_tokens_saved: int = 0
        self._strategy_usage: dict[CompressionStrategy, int] = {
            s: 0 for s in CompressionStrategy
        }

    def _build_strategies(self) -> None:
        self._simple = SimpleStrategy(self._options)
        self._summarize = SummarizeStrategy(
            self._simple,
            summarizer=self._summarizer,
            timeout_seconds=self._summarizer_timeout,
        )

    @property
    def options(self) -> CompressionOptions:
        return self._options

    def update_options(self, **changes: Any) -> None:
        """Update compression options in place."""
        for key, value in changes.items():
            if not hasattr(self._options, key):
                raise ValueError(f"Unknown compression option '{key}'")
            if key == "strategy":
                value = CompressionStrategy(value)
            setattr(self._options, key, value)
        self._build_strategies()

    def set_summarizer(self, summarizer: Optional[Summarizer]) -> None:
        self._summarizer = summarizer
        self._build_strategies()

    def should_preserve(self, message: Message) -> bool:
        return self._simple.should_preserve(message)

    async def compress(
        self,
        messages: Sequence[Message],
        strategy: Optional[CompressionStrategy] = None,
    ) -> CompressionResult:
        """Compress a batch of messages.

        Args:
            messages: Messages to compress, in chronological order
            strategy: Override for the configured default strategy

        Returns:
            CompressionResult whose token count never exceeds the input's
        """
        start_time = time.perf_counter()
        strategy = CompressionStrategy(strategy or self._options.strategy)
        original_tokens = estimate_messages(messages)

        if strategy == CompressionStrategy.AI_SUMMARIZATION:
            compressed = await self._ai_summarization(messages)
        elif strategy == CompressionStrategy.HYBRID:
            compressed = await self._hybrid(messages)
        else:
            compressed = self._simple.compress(messages)

        compressed_tokens = estimate_messages(compressed.messages)
        if compressed_tokens > original_tokens:
            logger.debug(
                f"[Compressor] {strategy.value} grew {original_tokens} -> "
                f"{compressed_tokens} tokens, keeping input"
            )
            compressed = _Compressed(messages=list(messages), summary_text="",
                                     fell_back=compressed.fell_back)
            compressed_tokens = original_tokens

        self._total_compressions += 1
        self._strategy_usage[strategy] += 1
        self._total_tokens_saved += original_tokens - compressed_tokens
        if compressed.fell_back:
            self._fallbacks += 1

        return CompressionResult(
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=compression_ratio(original_tokens, compressed_tokens),
            summary_text=compressed.summary_text,
            messages=compressed.messages,
            strategy_used=strategy,
            fell_back=compressed.fell_back,
            time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _ai_summarization(self, messages: Sequence[Message]) -> _Compressed:
        outcome = await self._summarize.compress(messages)

        def fallback() -> _Compressed:
            result = self._simple.compress(messages)
            result.fell_back = True
            return result

        return degrade(outcome, fallback, "[Compressor] summarizer")

    async def _hybrid(self, messages: Sequence[Message]) -> _Compressed:
        simple = self._simple.compress(messages)
        if not self._summarize.available or len(simple.messages) <= HYBRID_AI_MIN_MESSAGES:
            return simple

        outcome = await self._summarize.compress(simple.messages)

        def fallback() -> _Compressed:
            simple.fell_back = True
            return simple

        compressed = degrade(outcome, fallback, "[Compressor] summarizer")
        if not compressed.summary_text:
            # Nothing left for the summarizer; the simple summary still stands.
            compressed.summary_text = simple.summary_text
        return compressed

    def compress_tool_result(self, text: str, max_length: int = 500) -> str:
        return compress_tool_result(text, max_length)

    def remove_redundancy(self, messages: Sequence[Message]) -> list[Message]:
        return remove_redundancy(messages)

    def get_metrics(self) -> dict[str, Any]:
        """Get compression metrics."""
        return {
            "total_compressions": self._total_compressions,
            "fallbacks": self._fallbacks,
            "total_tokens_saved": self._total_tokens_saved,
            "strategy_usage": {s.value: n for s, n in self._strategy_usage.items()},
        }

    def reset_metrics(self) -> None:
        """Reset compression metrics."""
        self._total_compressions = 0
        self._fallbacks = 0
        self._total_tokens_saved = 0
        self._strategy_usage = {s: 0 for s in CompressionStrategy}


__all__ = [
    "CompressionStrategy",
    "CompressionOptions",
    "CompressionResult",
    "Summarizer",
    "SimpleStrategy",
    "SummarizeStrategy",
    "MessageCompressor",
    "compress_tool_result",
    "content_fingerprint",
    "remove_redundancy",
    "render_transcript",
]
