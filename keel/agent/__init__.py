"""Agent turn loop, reasoning engine contract, tools and event streaming.

Usage:
    from keel.agent import AgentLoop, AgentRequest

    loop = AgentLoop.from_settings(settings, engine=engine, registry=registry)
    async for event in loop.stream(AgentRequest(message="Summarize open incidents")):
        print(event.to_sse())
"""

from keel.agent.events import (
    EventType,
    StreamEvent,
    done_event,
    error_event,
    text_event,
    thinking_event,
    tool_event,
    tool_result_event,
)
from keel.agent.llm import (
    AnthropicReasoningEngine,
    AnthropicSummarizer,
    BlockType,
    ContentBlock,
    ModelRequest,
    ModelResponse,
    ReasoningEngine,
)
from keel.agent.loop import (
    AgentLoop,
    AgentRequest,
    AgentRunResult,
    LoopConfig,
    LoopState,
    TerminationReason,
)
from keel.agent.stream import EventStream
from keel.agent.tools import (
    ToolExecutionPolicy,
    ToolExecutionResult,
    ToolExecutor,
    ToolInvocationRequest,
    ToolOutput,
    ToolRegistry,
)

__all__ = [
    "EventType",
    "StreamEvent",
    "done_event",
    "error_event",
    "text_event",
    "thinking_event",
    "tool_event",
    "tool_result_event",
    "AnthropicReasoningEngine",
    "AnthropicSummarizer",
    "BlockType",
    "ContentBlock",
    "ModelRequest",
    "ModelResponse",
    "ReasoningEngine",
    "AgentLoop",
    "AgentRequest",
    "AgentRunResult",
    "LoopConfig",
    "LoopState",
    "TerminationReason",
    "EventStream",
    "ToolExecutionPolicy",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolInvocationRequest",
    "ToolOutput",
    "ToolRegistry",
]
