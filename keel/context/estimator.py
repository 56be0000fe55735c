"""Token estimation for messages, content blocks and tool schemas.

Estimates are heuristic (about four characters per token) and fully
deterministic: identical input always yields the identical estimate. They
are not meant to match any engine's exact count.

Example:
    >>> estimate_text("hello world!")
    3
    >>> estimate_message(Message(role=Role.USER, content="hello world!"))
    7
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterable, Optional, Sequence, Union

from keel.context.messages import Message


# =============================================================================
# Constants
# =============================================================================

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
TOOL_REFERENCE_TOKENS = 10
IMAGE_TOKENS = 1500
TOOL_BLOCK_OVERHEAD_TOKENS = 20
TOOL_SCHEMA_CHARS_PER_TOKEN = 2.5
REQUEST_OVERHEAD_RATIO = 0.05


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


# =============================================================================
# Estimators
# =============================================================================


def estimate_text(text: Optional[str]) -> int:
    """Estimate tokens for plain text. Empty text costs nothing."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_block(block: dict[str, Any]) -> int:
    """Estimate tokens for one engine content block.

    Images cost a fixed amount regardless of size. Tool use and tool result
    blocks are priced by their JSON form plus framing overhead.
    """
    block_type = block.get("type")
    if block_type == "text":
        return estimate_text(block.get("text", ""))
    if block_type == "thinking":
        return estimate_text(block.get("thinking", ""))
    if block_type == "image":
        return IMAGE_TOKENS
    if block_type == "tool_use":
        return estimate_text(_to_json(block.get("input", {}))) + TOOL_BLOCK_OVERHEAD_TOKENS
    if block_type == "tool_result":
        content = block.get("content", "")
        if not isinstance(content, str):
            content = _to_json(content)
        return estimate_text(content) + TOOL_BLOCK_OVERHEAD_TOKENS
    return estimate_text(_to_json(block))


def estimate_message(message: Message) -> int:
    """Estimate tokens for a message including role framing.

    A precomputed ``token_estimate`` on the message is returned as-is.
    """
    if message.token_estimate is not None:
        return message.token_estimate
    if message.blocks:
        tokens = sum(estimate_block(b) for b in message.blocks)
    else:
        tokens = estimate_text(message.content)
    tokens += MESSAGE_OVERHEAD_TOKENS
    if message.tools_used:
        tokens += len(message.tools_used) * TOOL_REFERENCE_TOKENS
    return tokens


def estimate_messages(messages: Iterable[Message]) -> int:
    """Estimate tokens for a sequence of messages."""
    return sum(estimate_message(m) for m in messages)


def estimate(value: Union[str, Message, Sequence[Message], None]) -> int:
    """Estimate tokens for text, a message, or a message sequence."""
    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_text(value)
    if isinstance(value, Message):
        return estimate_message(value)
    return estimate_messages(value)


def estimate_tools(tools: Optional[Sequence[dict[str, Any]]]) -> int:
    """Estimate tokens for tool schemas sent with a request."""
    if not tools:
        return 0
    return math.ceil(len(_to_json(list(tools))) / TOOL_SCHEMA_CHARS_PER_TOKEN)


def estimate_conversation(
    messages: Sequence[Message],
    tools: Optional[Sequence[dict[str, Any]]] = None,
    system_prompt: Optional[str] = None,
) -> int:
    """Estimate tokens for a whole engine request.

    Sums the system prompt, messages and tool schemas, then adds a fixed
    request overhead.
    """
    base = estimate_text(system_prompt) + estimate_messages(messages) + estimate_tools(tools)
    return math.ceil(base * (1 + REQUEST_OVERHEAD_RATIO))


def compression_ratio(original_tokens: int, compressed_tokens: int) -> float:
    """Fraction of tokens removed, ``(original - compressed) / original``."""
    if original_tokens <= 0:
        return 0.0
    return (original_tokens - compressed_tokens) / original_tokens


def with_token_estimates(messages: Iterable[Message]) -> list[Message]:
    """Return copies of ``messages`` carrying their token estimates."""
    return [
        m if m.token_estimate is not None else m.replace(token_estimate=estimate_message(m))
        for m in messages
    ]


__all__ = [
    "CHARS_PER_TOKEN",
    "MESSAGE_OVERHEAD_TOKENS",
    "TOOL_REFERENCE_TOKENS",
    "IMAGE_TOKENS",
    "estimate",
    "estimate_text",
    "estimate_block",
    "estimate_message",
    "estimate_messages",
    "estimate_tools",
    "estimate_conversation",
    "compression_ratio",
    "with_token_estimates",
]
