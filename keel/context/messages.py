"""Conversation data model for the Keel context engine.

Messages are immutable. Compression and retrieval never edit a message in
place; they produce new synthetic messages, so a conversation log is
append-only and replaying a strategy over the same input yields the same
output.

Key Components:
    - Role: Conversation roles
    - Message: One immutable conversation entry
    - WindowConfig: Validated window thresholds
    - ContextStrategy: Closed set of context strategies
    - ContextAnalysis: Classification of a conversation against a WindowConfig
    - TruncationResult: Output of a truncation pass

Example:
    >>> msg = Message(role=Role.USER, content="Deploy failed with error 502")
    >>> msg.to_engine_message()
    {'role': 'user', 'content': 'Deploy failed with error 502'}
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from keel.core.exceptions import ConfigurationError


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Conversation roles."""

    USER = "user"
    ASSISTANT = "assistant"


class ContextStrategy(str, Enum):
    """Strategies the orchestrator can apply to a conversation.

    Attributes:
        SLIDING_WINDOW: Truncate to the target using the window manager
        SUMMARIZATION: Compress older messages, keep recent ones
        RETRIEVAL_AUGMENTED: Keep recent messages, add relevant history
        HYBRID: Retrieval, then compression, then a final truncation pass
    """

    SLIDING_WINDOW = "sliding-window"
    SUMMARIZATION = "summarization"
    RETRIEVAL_AUGMENTED = "retrieval-augmented"
    HYBRID = "hybrid"


# =============================================================================
# Message
# =============================================================================


@dataclass(frozen=True)
class Message:
    """One conversation entry.

    Attributes:
        role: Who produced the message
        content: Plain-text content
        timestamp: When the message was created
        tools_used: Ordered, de-duplicated tool names referenced by the turn
        importance: Precomputed importance in [0, 1]
        token_estimate: Precomputed token estimate, trusted over recounting
        compressed: True for synthetic summary messages
        summary_of: Description of what a summary message replaced
        blocks: Raw engine content blocks for tool-use turns
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    tools_used: Optional[tuple[str, ...]] = None
    importance: Optional[float] = None
    token_estimate: Optional[int] = None
    compressed: bool = False
    summary_of: Optional[str] = None
    blocks: Optional[tuple[dict[str, Any], ...]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        if self.tools_used is not None:
            object.__setattr__(self, "tools_used", tuple(dict.fromkeys(self.tools_used)))
        if self.blocks is not None:
            object.__setattr__(self, "blocks", tuple(self.blocks))
        if self.importance is not None and not 0.0 <= self.importance <= 1.0:
            raise ValueError(f"importance must be within [0, 1], got {self.importance}")
        if self.token_estimate is not None and self.token_estimate < 0:
            raise ValueError(f"token_estimate must be non-negative, got {self.token_estimate}")

    @property
    def has_tools(self) -> bool:
        return bool(self.tools_used)

    def replace(self, **changes: Any) -> "Message":
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def to_engine_message(self) -> dict[str, Any]:
        """Convert to the reasoning engine's message format."""
        if self.blocks:
            return {"role": self.role.value, "content": [dict(b) for b in self.blocks]}
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "compressed": self.compressed,
        }
        if self.tools_used:
            data["tools_used"] = list(self.tools_used)
        if self.importance is not None:
            data["importance"] = self.importance
        if self.token_estimate is not None:
            data["token_estimate"] = self.token_estimate
        if self.summary_of:
            data["summary_of"] = self.summary_of
        if self.blocks:
            data["blocks"] = [dict(b) for b in self.blocks]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create a Message from a dictionary.

        Accepts both snake_case and camelCase keys for tool names and
        token estimates.
        """
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        elif timestamp is None:
            timestamp = utc_now()
        tools = data.get("tools_used", data.get("toolsUsed"))
        blocks = data.get("blocks")
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            timestamp=timestamp,
            tools_used=tuple(tools) if tools else None,
            importance=data.get("importance"),
            token_estimate=data.get("token_estimate", data.get("tokenEstimate")),
            compressed=bool(data.get("compressed", False)),
            summary_of=data.get("summary_of", data.get("summaryOf")),
            blocks=tuple(blocks) if blocks else None,
        )


# =============================================================================
# Window Configuration
# =============================================================================


@dataclass(frozen=True)
class WindowConfig:
    """Token thresholds for one conversation window.

    Raises ConfigurationError at construction when the ordering
    ``retrieval_threshold <= compression_threshold <= target_tokens < max_tokens``
    does not hold.
    """

    max_tokens: int = 180000
    target_tokens: int = 150000
    preserve_messages: int = 10
    compression_threshold: int = 120000
    retrieval_threshold: int = 100000

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ConfigurationError(
                "max_tokens must be positive",
                config_key="max_tokens",
                validation_details=f"max_tokens={self.max_tokens}",
            )
        if self.preserve_messages < 0:
            raise ConfigurationError(
                "preserve_messages cannot be negative",
                config_key="preserve_messages",
                validation_details=f"preserve_messages={self.preserve_messages}",
            )
        if not 0 < self.target_tokens < self.max_tokens:
            raise ConfigurationError(
                "target_tokens must be positive and less than max_tokens",
                config_key="target_tokens",
                validation_details=f"target={self.target_tokens}, max={self.max_tokens}",
            )
        if not 0 <= self.retrieval_threshold <= self.compression_threshold <= self.target_tokens:
            raise ConfigurationError(
                "thresholds must satisfy retrieval <= compression <= target",
                config_key="compression_threshold",
                validation_details=(
                    f"retrieval={self.retrieval_threshold}, "
                    f"compression={self.compression_threshold}, "
                    f"target={self.target_tokens}"
                ),
            )

    def with_changes(self, **changes: Any) -> "WindowConfig":
        """Return a validated copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


# =============================================================================
# Analysis and Truncation Results
# =============================================================================


@dataclass
class ContextAnalysis:
    """Classification of a conversation against a WindowConfig.

    Attributes:
        total_tokens: Estimated tokens of the whole conversation
        message_count: Number of messages
        needs_compression: Total exceeds the compression threshold
        needs_retrieval: Total exceeds the retrieval threshold
        recommended_strategy: Strategy picked from the threshold ladder
        preserved: Newest messages that must stay verbatim
        compressible: Everything older than the preserved tail
    """

    total_tokens: int
    message_count: int
    needs_compression: bool
    needs_retrieval: bool
    recommended_strategy: ContextStrategy
    preserved: list[Message] = field(default_factory=list)
    compressible: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "message_count": self.message_count,
            "needs_compression": self.needs_compression,
            "needs_retrieval": self.needs_retrieval,
            "recommended_strategy": self.recommended_strategy.value,
            "preserved_count": len(self.preserved),
            "compressible_count": len(self.compressible),
        }


@dataclass
class TruncationResult:
    """Output of a truncation pass."""

    messages: list[Message]
    token_count: int
    messages_dropped: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_count": len(self.messages),
            "token_count": self.token_count,
            "messages_dropped": self.messages_dropped,
        }


__all__ = [
    "utc_now",
    "Role",
    "ContextStrategy",
    "Message",
    "WindowConfig",
    "ContextAnalysis",
    "TruncationResult",
]
