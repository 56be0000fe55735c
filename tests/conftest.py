"""Shared pytest fixtures for Keel tests.

This module provides common fixtures used across all test modules:
- Message builders with deterministic timestamps
- A scripted reasoning engine that never touches the network
- Agent loop construction with in-memory collaborators
- Settings isolation between tests
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence, Union

import pytest

from keel.agent.llm import BlockType, ContentBlock, ModelRequest, ModelResponse
from keel.agent.loop import AgentLoop, LoopConfig
from keel.agent.tools import ToolExecutionPolicy, ToolExecutor, ToolRegistry
from keel.cache.response_cache import ResponseCache
from keel.config.settings import clear_settings_cache
from keel.context.compression import MessageCompressor
from keel.context.messages import Message, Role, WindowConfig
from keel.context.strategies import ContextStrategyManager
from keel.context.window import WindowManager
from keel.telemetry.budget import TokenBudget


BASE_TIME = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Settings Isolation
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Drop KEEL_* variables and the cached settings around every test."""
    import os

    for key in list(os.environ):
        if key.startswith("KEEL_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


# -----------------------------------------------------------------------------
# Message Builders
# -----------------------------------------------------------------------------

def make_message(
    content: str,
    role: Union[Role, str] = Role.USER,
    minutes: int = 0,
    **kwargs: Any,
) -> Message:
    """Build a message ``minutes`` after a fixed base time."""
    return Message(
        role=Role(role),
        content=content,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


def make_conversation(count: int, chars: int = 40, prefix: str = "message") -> list[Message]:
    """Alternating user/assistant messages of roughly ``chars`` characters."""
    messages = []
    for i in range(count):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        body = f"{prefix} {i} "
        body = (body + "x" * chars)[:max(chars, len(body))]
        messages.append(make_message(body, role=role, minutes=i))
    return messages


# -----------------------------------------------------------------------------
# Scripted Reasoning Engine
# -----------------------------------------------------------------------------

def text_response(text: str, input_tokens: int = 100, output_tokens: int = 20) -> ModelResponse:
    return ModelResponse(
        content=[ContentBlock.text_block(text)],
        stop_reason="end_turn",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> ModelResponse:
    """Response requesting ``(id, name, input)`` tool calls."""
    content = [ContentBlock.text_block(text)] if text else []
    content.extend(ContentBlock.tool_use(call_id, name, tool_input) for call_id, name, tool_input in calls)
    return ModelResponse(content=content, stop_reason="tool_use", input_tokens=100, output_tokens=30)


class FakeEngine:
    """ReasoningEngine returning scripted responses in order.

    A scripted exception is raised instead of returned. With
    ``stream_fragments`` the blocks are pushed through the fragment callback
    in order before the response is returned: text and thinking as strings,
    tool_use blocks whole.
    """

    def __init__(
        self,
        script: Sequence[Union[ModelResponse, BaseException]] = (),
        stream_fragments: bool = False,
    ) -> None:
        self._script = list(script)
        self.stream_fragments = stream_fragments
        self.requests: list[ModelRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, request: ModelRequest, on_fragment=None) -> ModelResponse:
        self.requests.append(request)
        if not self._script:
            raise AssertionError("FakeEngine called more times than scripted")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if self.stream_fragments and on_fragment is not None:
            for block in item.content:
                if block.type is BlockType.TOOL_USE:
                    await on_fragment(block.type, block)
                elif block.text:
                    await on_fragment(block.type, block.text)
        return item


class FakeSummarizer:
    """Summarizer returning fixed text, or raising when ``error`` is set."""

    def __init__(self, text: str = "Short summary.", error: Optional[Exception] = None) -> None:
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.text


def build_loop(
    engine: FakeEngine,
    registry: Optional[ToolRegistry] = None,
    config: Optional[LoopConfig] = None,
    cache: Optional[ResponseCache] = None,
    store: Any = None,
    policy: ToolExecutionPolicy = ToolExecutionPolicy.SEQUENTIAL,
    tool_timeout: float = 5.0,
    window: Optional[WindowConfig] = None,
) -> AgentLoop:
    """Agent loop over in-memory collaborators."""
    return AgentLoop(
        engine=engine,
        executor=ToolExecutor(registry or ToolRegistry(), timeout_seconds=tool_timeout, policy=policy),
        context=ContextStrategyManager(window=WindowManager(window), compressor=MessageCompressor()),
        budget=TokenBudget(store=store),
        cache=cache,
        store=store,
        config=config or LoopConfig(),
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def small_window() -> WindowConfig:
    """Window config small enough to exercise every strategy quickly."""
    return WindowConfig(
        max_tokens=4000,
        target_tokens=3000,
        preserve_messages=4,
        compression_threshold=2500,
        retrieval_threshold=2000,
    )


@pytest.fixture
def echo_registry() -> ToolRegistry:
    """Registry with an ``echo`` tool and a ``boom`` tool that raises."""
    registry = ToolRegistry()

    @registry.tool("echo", description="Echo the text back")
    async def echo(text: str = "") -> dict[str, Any]:
        return {"echo": text}

    @registry.tool("boom", description="Always fails")
    async def boom(**kwargs: Any) -> None:
        raise ValueError("bad input")

    return registry
