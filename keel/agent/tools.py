"""Tool registry and executor for the agent turn loop.

Tools are async callables registered by name together with the schema the
reasoning engine sees. The executor runs the tool requests of one model
turn and always returns exactly one result per request, paired by id.
Failures of any kind (unknown tool, provider error, timeout) become failed
results; they never propagate into the loop.

Key Components:
    - ToolInvocationRequest: A tool call requested by the model
    - ToolExecutionResult: The outcome of one request
    - ToolRegistry: Name to handler mapping plus engine-facing schemas
    - ToolExecutor: Timeout-bounded execution, sequential or concurrent

Example:
    >>> registry = ToolRegistry()
    >>> @registry.tool("get_weather", "Current weather for a city",
    ...                {"type": "object", "properties": {"city": {"type": "string"}}})
    ... async def get_weather(city: str) -> dict:
    ...     return {"city": city, "temp_c": 21}
    >>> executor = ToolExecutor(registry, timeout_seconds=30)
    >>> results = await executor.execute_all([ToolInvocationRequest("t1", "get_weather", {"city": "Oslo"})])
    >>> results[0].success
    True
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from keel.context.estimator import estimate_text, CHARS_PER_TOKEN
from keel.core.exceptions import ToolError, ToolExecutionError, ToolNotFoundError, ToolTimeoutError


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_TOOL_TIMEOUT = 30.0
DEFAULT_MAX_CONCURRENT = 4
DEFAULT_RESULT_MAX_TOKENS = 4000
PARAM_SUMMARY_MAX_CHARS = 120


ToolHandler = Callable[..., Awaitable[Any]]


class ToolExecutionPolicy(str, Enum):
    """How the tool requests of one turn are scheduled."""

    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class ToolInvocationRequest:
    """A tool call requested by the reasoning engine.

    Attributes:
        id: Engine-assigned id, unique within the turn
        name: Tool name
        input: Tool arguments
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolOutput:
    """What a tool provider returns: data on success, an error otherwise."""

    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ToolExecutionResult:
    """Outcome of one tool request, paired with it by ``id``.

    Attributes:
        id: Id of the originating request
        name: Tool name
        success: Whether the tool succeeded
        data: Tool output when successful
        error_message: Failure description otherwise
        duration_ms: Wall time of the invocation
    """

    id: str
    name: str
    success: bool
    data: Any = None
    error_message: Optional[str] = None
    duration_ms: float = 0.0

    @classmethod
    def failed(
        cls,
        request: ToolInvocationRequest,
        error_message: str,
        duration_ms: float = 0.0,
    ) -> "ToolExecutionResult":
        return cls(
            id=request.id,
            name=request.name,
            success=False,
            error_message=error_message,
            duration_ms=duration_ms,
        )

    def content_text(self, max_tokens: int = DEFAULT_RESULT_MAX_TOKENS) -> str:
        """Text fed back to the model, truncated past ``max_tokens``."""
        if self.success:
            text = self.data if isinstance(self.data, str) else json.dumps(self.data, default=str)
        else:
            text = f"Error: {self.error_message}"
        return truncate_tool_output(text, max_tokens)

    def to_block(self, max_tokens: int = DEFAULT_RESULT_MAX_TOKENS) -> dict[str, Any]:
        """``tool_result`` content block for the next model call."""
        return {
            "type": "tool_result",
            "tool_use_id": self.id,
            "content": self.content_text(max_tokens),
            "is_error": not self.success,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "success": self.success,
            "data": self.data,
            "error_message": self.error_message,
            "duration_ms": round(self.duration_ms, 2),
        }


def truncate_tool_output(text: str, max_tokens: int = DEFAULT_RESULT_MAX_TOKENS) -> str:
    """Cut tool output that would cost more than ``max_tokens``."""
    tokens = estimate_text(text)
    if tokens <= max_tokens:
        return text
    kept = text[: max_tokens * CHARS_PER_TOKEN]
    return f"{kept}\n\n[Truncated: Original {tokens} tokens -> {max_tokens} tokens]"


def summarize_input(tool_input: dict[str, Any], max_chars: int = PARAM_SUMMARY_MAX_CHARS) -> str:
    """Compact ``key=value`` rendering of tool arguments for display."""
    parts = []
    for key, value in tool_input.items():
        rendered = value if isinstance(value, str) else json.dumps(value, default=str)
        if len(rendered) > 40:
            rendered = rendered[:37] + "..."
        parts.append(f"{key}={rendered}")
    summary = ", ".join(parts)
    if len(summary) > max_chars:
        summary = summary[: max_chars - 3] + "..."
    return summary


def build_tool_result_message(results: Sequence[ToolExecutionResult], max_tokens: int) -> dict[str, Any]:
    """One user-role message carrying every result of a turn."""
    return {"role": "user", "content": [r.to_block(max_tokens) for r in results]}


# =============================================================================
# Tool Registry
# =============================================================================


@dataclass
class RegisteredTool:
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_schema(self) -> dict[str, Any]:
        """Tool definition in the engine's format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Maps tool names to async handlers.

    A handler receives the tool input as keyword arguments. It may return
    any JSON-serializable value, or a ToolOutput to report failure without
    raising.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None,
    ) -> RegisteredTool:
        if name in self._tools:
            logger.warning(f"[ToolRegistry] Replacing tool '{name}'")
        tool = RegisteredTool(name=name, handler=handler, description=description)
        if input_schema is not None:
            tool.input_schema = input_schema
        self._tools[name] = tool
        return tool

    def tool(
        self,
        name: str,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of ``register``."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler, description, input_schema)
            return handler

        return decorator

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> RegisteredTool:
        """Look up a tool.

        Raises:
            ToolNotFoundError: If no tool has that name.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name, available_tools=self.names())
        return tool

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [t.to_schema() for t in self._tools.values()]

    async def invoke(self, name: str, tool_input: dict[str, Any]) -> ToolOutput:
        """Call a tool by name; provider exceptions propagate."""
        result = await self.get(name).handler(**tool_input)
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(success=True, data=result)


# =============================================================================
# Tool Executor
# =============================================================================


class ToolExecutor:
    """Runs the tool requests of one model turn.

    Sequential execution awaits each request before starting the next, in
    request order. Concurrent execution runs them together, bounded by a
    semaphore. Either way the returned list has one result per request, in
    request order, each carrying its request's id.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT,
        policy: ToolExecutionPolicy = ToolExecutionPolicy.SEQUENTIAL,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._registry = registry
        self._timeout = timeout_seconds
        self._policy = ToolExecutionPolicy(policy)
        self._max_concurrent = max_concurrent

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def policy(self) -> ToolExecutionPolicy:
        return self._policy

    async def execute(self, request: ToolInvocationRequest) -> ToolExecutionResult:
        """Run one request. Never raises."""
        start = time.perf_counter()
        try:
            output = await asyncio.wait_for(
                self._registry.invoke(request.name, request.input),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = ToolTimeoutError(request.name, self._timeout)
            logger.error(f"[ToolExecutor] Tool '{request.name}' {error.message}")
            return ToolExecutionResult.failed(request, error.message, _elapsed_ms(start))
        except ToolError as e:
            logger.warning(f"[ToolExecutor] Tool '{request.name}' failed: {e.message}")
            return ToolExecutionResult.failed(request, e.message, _elapsed_ms(start))
        except Exception as e:
            logger.error(f"[ToolExecutor] Tool '{request.name}' execution failed: {e}")
            return ToolExecutionResult.failed(request, f"{type(e).__name__}: {e}", _elapsed_ms(start))

        duration_ms = _elapsed_ms(start)
        if not output.success:
            error = ToolExecutionError(output.error or "Tool reported failure", tool_name=request.name)
            logger.info(f"[ToolExecutor] Tool '{request.name}' reported failure: {error.message}")
            return ToolExecutionResult.failed(request, error.message, duration_ms)

        logger.debug(f"[ToolExecutor] Tool '{request.name}' completed in {duration_ms:.1f}ms")
        return ToolExecutionResult(
            id=request.id,
            name=request.name,
            success=True,
            data=output.data,
            duration_ms=duration_ms,
        )

    async def execute_all(
        self,
        requests: Sequence[ToolInvocationRequest],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> list[ToolExecutionResult]:
        """Run every request of a turn.

        Args:
            requests: Requests in the order the model emitted them.
            should_stop: Checked before each sequential invocation; once it
                returns True the remaining requests are reported as skipped.

        Returns:
            One result per request, in request order.
        """
        if self._policy is ToolExecutionPolicy.CONCURRENT and len(requests) > 1:
            return await self._execute_concurrent(requests)

        results: list[ToolExecutionResult] = []
        for request in requests:
            if should_stop is not None and should_stop():
                results.append(ToolExecutionResult.failed(request, "Skipped: request cancelled"))
                continue
            results.append(await self.execute(request))
        return results

    async def _execute_concurrent(
        self,
        requests: Sequence[ToolInvocationRequest],
    ) -> list[ToolExecutionResult]:
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def execute_with_semaphore(request: ToolInvocationRequest) -> ToolExecutionResult:
            async with semaphore:
                return await self.execute(request)

        tasks = [execute_with_semaphore(r) for r in requests]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[ToolExecutionResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                outcome = ToolExecutionResult.failed(request, f"{type(outcome).__name__}: {outcome}")
            results.append(outcome)
        return results


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


__all__ = [
    "ToolExecutionPolicy",
    "ToolInvocationRequest",
    "ToolOutput",
    "ToolExecutionResult",
    "RegisteredTool",
    "ToolRegistry",
    "ToolExecutor",
    "ToolHandler",
    "truncate_tool_output",
    "summarize_input",
    "build_tool_result_message",
]
