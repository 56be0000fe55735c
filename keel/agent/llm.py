"""Reasoning engine contract and the Anthropic implementation.

The turn loop talks to the engine only through ``ReasoningEngine``: one
request in, ordered content blocks plus a stop reason out. Text and
thinking fragments, and each finished tool_use block, are pushed to an
optional callback as they arrive so the loop can stream them in block order
before the response completes.

Key Components:
    - ContentBlock: One text, thinking or tool-use block of a response
    - ModelRequest / ModelResponse: The engine request/response contract
    - ReasoningEngine: Protocol the loop depends on
    - AnthropicReasoningEngine: Streaming Messages API implementation
    - AnthropicSummarizer: Fast-model summarizer for the compressor

Example:
    >>> engine = AnthropicReasoningEngine.from_settings(get_settings())
    >>> response = await engine.complete(ModelRequest(
    ...     system_prompt="You are helpful.",
    ...     messages=[{"role": "user", "content": "Hi"}],
    ... ))
    >>> response.text
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable, TYPE_CHECKING

import anthropic

from keel.agent.tools import ToolInvocationRequest
from keel.core.exceptions import ModelCallError, SummarizationError

if TYPE_CHECKING:
    from keel.config.settings import KeelSettings


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"


class BlockType(str, Enum):
    """Kinds of response content blocks."""

    TEXT = "text"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    REDACTED_THINKING = "redacted_thinking"


FragmentCallback = Callable[[BlockType, Union[str, "ContentBlock"]], Awaitable[None]]
"""Receives streamed fragments. Text and thinking arrive as string deltas; a
tool_use block arrives once, as the finished ``ContentBlock``."""


# =============================================================================
# Request / Response
# =============================================================================


@dataclass(frozen=True)
class ContentBlock:
    """One block of a model response.

    Attributes:
        type: Block kind
        text: Text for text blocks, reasoning for thinking blocks
        id: Tool-use id
        name: Tool name
        input: Tool arguments
        signature: Thinking signature, echoed back on the next call
        data: Opaque payload of redacted thinking
    """

    type: BlockType
    text: str = ""
    id: Optional[str] = None
    name: Optional[str] = None
    input: dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    data: Optional[str] = None

    @classmethod
    def text_block(cls, text: str) -> "ContentBlock":
        return cls(BlockType.TEXT, text=text)

    @classmethod
    def tool_use(cls, id: str, name: str, input: Optional[dict[str, Any]] = None) -> "ContentBlock":
        return cls(BlockType.TOOL_USE, id=id, name=name, input=input or {})

    @classmethod
    def thinking(cls, text: str, signature: Optional[str] = None) -> "ContentBlock":
        return cls(BlockType.THINKING, text=text, signature=signature)

    def to_dict(self) -> dict[str, Any]:
        """Block in the engine's message format."""
        if self.type is BlockType.TEXT:
            return {"type": "text", "text": self.text}
        if self.type is BlockType.TOOL_USE:
            return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}
        if self.type is BlockType.THINKING:
            block = {"type": "thinking", "thinking": self.text}
            if self.signature is not None:
                block["signature"] = self.signature
            return block
        return {"type": "redacted_thinking", "data": self.data}


@dataclass(frozen=True)
class ModelRequest:
    """One reasoning engine call.

    Attributes:
        system_prompt: System instructions
        messages: Conversation in the engine's message format
        tools: Tool definitions the model may call
        max_output_tokens: Output token limit
        thinking_budget: Extended thinking budget, if enabled
    """

    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_output_tokens: int = 8192
    thinking_budget: Optional[int] = None


@dataclass(frozen=True)
class ModelResponse:
    """Ordered content blocks and the stop reason of one engine call."""

    content: list[ContentBlock]
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if b.type is BlockType.TEXT)

    @property
    def tool_requests(self) -> list[ToolInvocationRequest]:
        return [
            ToolInvocationRequest(id=b.id or "", name=b.name or "", input=b.input)
            for b in self.content
            if b.type is BlockType.TOOL_USE
        ]

    def to_assistant_message(self) -> dict[str, Any]:
        """The model's raw turn, echoed back into the conversation."""
        return {"role": "assistant", "content": [b.to_dict() for b in self.content]}


@runtime_checkable
class ReasoningEngine(Protocol):
    """External reasoning engine."""

    async def complete(
        self,
        request: ModelRequest,
        on_fragment: Optional[FragmentCallback] = None,
    ) -> ModelResponse:
        """Run one model call.

        Raises:
            ModelCallError: If the call fails for any reason.
        """
        ...


# =============================================================================
# Anthropic Implementation
# =============================================================================


def _content_block_from_api(block: Any) -> Optional[ContentBlock]:
    block_type = getattr(block, "type", None)
    if block_type == "text":
        return ContentBlock.text_block(block.text)
    if block_type == "tool_use":
        return ContentBlock.tool_use(block.id, block.name, dict(block.input or {}))
    if block_type == "thinking":
        return ContentBlock.thinking(block.thinking, getattr(block, "signature", None))
    if block_type == "redacted_thinking":
        return ContentBlock(BlockType.REDACTED_THINKING, data=block.data)
    logger.debug(f"[Anthropic] Ignoring unknown content block type: {block_type}")
    return None


def _map_api_error(e: Exception, model: str) -> ModelCallError:
    if isinstance(e, anthropic.APITimeoutError):
        return ModelCallError(f"Anthropic API request timed out: {e}", model=model, code="MODEL_TIMEOUT")
    if isinstance(e, anthropic.APIConnectionError):
        return ModelCallError(f"Failed to connect to Anthropic API: {e}", model=model)
    if isinstance(e, anthropic.RateLimitError):
        return ModelCallError(f"Rate limit exceeded: {e}", model=model, status_code=429)
    if isinstance(e, anthropic.APIStatusError):
        return ModelCallError(
            f"Anthropic API error: {e.status_code} - {e.message}",
            model=model,
            status_code=e.status_code,
        )
    return ModelCallError(f"Anthropic API call failed: {e}", model=model)


class AnthropicReasoningEngine:
    """ReasoningEngine backed by the Anthropic streaming Messages API."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        if model.startswith("anthropic:"):
            model = model[len("anthropic:"):]
        self._model = model
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @classmethod
    def from_settings(cls, settings: "KeelSettings") -> "AnthropicReasoningEngine":
        """Build from settings.

        Raises:
            ConfigurationError: If ANTHROPIC_API_KEY is not configured.
        """
        return cls(
            model=settings.llm.model,
            api_key=settings.api_keys.require_anthropic_key(),
        )

    @property
    def model(self) -> str:
        return self._model

    def _request_params(self, request: ModelRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self._model,
            "max_tokens": request.max_output_tokens,
            "messages": request.messages,
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        if request.tools:
            params["tools"] = request.tools
        if request.thinking_budget:
            params["thinking"] = {"type": "enabled", "budget_tokens": request.thinking_budget}
        return params

    async def complete(
        self,
        request: ModelRequest,
        on_fragment: Optional[FragmentCallback] = None,
    ) -> ModelResponse:
        params = self._request_params(request)
        logger.debug(
            f"[Anthropic] Calling {self._model} with {len(request.messages)} messages, "
            f"{len(request.tools)} tools"
        )

        try:
            async with self._client.messages.stream(**params) as stream:
                async for event in stream:
                    if on_fragment is None:
                        continue
                    if event.type == "text":
                        await on_fragment(BlockType.TEXT, event.text)
                    elif event.type == "thinking":
                        await on_fragment(BlockType.THINKING, event.thinking)
                    elif event.type == "content_block_stop":
                        block = _content_block_from_api(getattr(event, "content_block", None))
                        if block is not None and block.type is BlockType.TOOL_USE:
                            await on_fragment(BlockType.TOOL_USE, block)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            error = _map_api_error(e, self._model)
            logger.error(f"[Anthropic] {error.message}")
            raise error from e

        blocks = [b for b in (_content_block_from_api(c) for c in final.content) if b is not None]
        logger.debug(
            f"[Anthropic] Response: stop_reason={final.stop_reason}, "
            f"tokens={final.usage.input_tokens + final.usage.output_tokens}"
        )
        return ModelResponse(
            content=blocks,
            stop_reason=final.stop_reason,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            model=final.model,
        )


class AnthropicSummarizer:
    """Summarizer callable for the compressor, backed by a fast model."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        max_tokens: int = 1000,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @classmethod
    def from_settings(cls, settings: "KeelSettings") -> "AnthropicSummarizer":
        return cls(
            model=settings.llm.summarizer_model,
            api_key=settings.api_keys.require_anthropic_key(),
            max_tokens=settings.llm.summarizer_max_tokens,
        )

    async def __call__(self, prompt: str) -> str:
        """Summarize ``prompt``.

        Raises:
            SummarizationError: If the call fails.
        """
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise SummarizationError(f"Summarizer call failed: {e}", model=self._model) from e
        return "".join(b.text for b in response.content if getattr(b, "type", None) == "text")


__all__ = [
    "BlockType",
    "ContentBlock",
    "ModelRequest",
    "ModelResponse",
    "ReasoningEngine",
    "FragmentCallback",
    "AnthropicReasoningEngine",
    "AnthropicSummarizer",
    "STOP_END_TURN",
    "STOP_TOOL_USE",
    "STOP_MAX_TOKENS",
]
