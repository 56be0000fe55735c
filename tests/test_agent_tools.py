"""Tests for tool registration and execution.

Test Coverage:
- Registry registration, lookup and schemas
- Failures returned as data: exceptions, unknown tools, timeouts
- ToolOutput failure reporting
- Sequential and concurrent policies keep request order and ids
- Cooperative stop between sequential invocations
- Result content truncation and block format
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from keel.agent.tools import (
    ToolExecutionPolicy,
    ToolExecutionResult,
    ToolExecutor,
    ToolInvocationRequest,
    ToolOutput,
    ToolRegistry,
    build_tool_result_message,
    summarize_input,
    truncate_tool_output,
)
from keel.core.exceptions import ToolNotFoundError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool("add", description="Add two numbers", input_schema={
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    })
    async def add(a: float, b: float) -> float:
        return a + b

    @registry.tool("sleep")
    async def sleep(seconds: float = 0.0, label: str = "") -> str:
        await asyncio.sleep(seconds)
        return label

    @registry.tool("fail")
    async def fail(**kwargs: Any) -> None:
        raise RuntimeError("disk full")

    @registry.tool("soft_fail")
    async def soft_fail(**kwargs: Any) -> ToolOutput:
        return ToolOutput(success=False, error="quota reached")

    return registry


def request(call_id: str, name: str, **tool_input: Any) -> ToolInvocationRequest:
    return ToolInvocationRequest(id=call_id, name=name, input=tool_input)


# =============================================================================
# Test: Registry
# =============================================================================


class TestToolRegistry:
    """Test the tool registry."""

    def test_registered_names(self, registry):
        assert registry.names() == ["add", "sleep", "fail", "soft_fail"]
        assert "add" in registry
        assert len(registry) == 4

    def test_schema_format(self, registry):
        schema = registry.schemas()[0]
        assert schema["name"] == "add"
        assert schema["description"] == "Add two numbers"
        assert schema["input_schema"]["required"] == ["a", "b"]

    def test_default_schema(self, registry):
        assert registry.get("sleep").input_schema == {"type": "object", "properties": {}}

    def test_unknown_tool(self, registry):
        with pytest.raises(ToolNotFoundError, match="Unknown tool: nope"):
            registry.get("nope")

    def test_unregister(self, registry):
        assert registry.unregister("add")
        assert not registry.unregister("add")

    @pytest.mark.asyncio
    async def test_invoke_wraps_plain_values(self, registry):
        output = await registry.invoke("add", {"a": 1, "b": 2})
        assert output == ToolOutput(success=True, data=3)


# =============================================================================
# Test: Execution
# =============================================================================


class TestToolExecutor:
    """Test single invocations."""

    @pytest.mark.asyncio
    async def test_success(self, registry):
        result = await ToolExecutor(registry).execute(request("t1", "add", a=2, b=3))
        assert result.success
        assert result.data == 5
        assert result.id == "t1"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_exception_becomes_failed_result(self, registry):
        result = await ToolExecutor(registry).execute(request("t1", "fail"))
        assert not result.success
        assert result.error_message == "RuntimeError: disk full"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_failed_result(self, registry):
        result = await ToolExecutor(registry).execute(request("t9", "missing"))
        assert not result.success
        assert result.error_message == "Unknown tool: missing"
        assert result.id == "t9"

    @pytest.mark.asyncio
    async def test_bad_arguments_are_failed_result(self, registry):
        result = await ToolExecutor(registry).execute(request("t1", "add", a=1))
        assert not result.success
        assert result.error_message.startswith("TypeError")

    @pytest.mark.asyncio
    async def test_timeout(self, registry):
        executor = ToolExecutor(registry, timeout_seconds=0.05)
        result = await executor.execute(request("t1", "sleep", seconds=5))
        assert not result.success
        assert result.error_message == "Tool execution timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_soft_failure(self, registry):
        result = await ToolExecutor(registry).execute(request("t1", "soft_fail"))
        assert not result.success
        assert result.error_message == "quota reached"

    def test_invalid_construction(self, registry):
        with pytest.raises(ValueError):
            ToolExecutor(registry, timeout_seconds=0)
        with pytest.raises(ValueError):
            ToolExecutor(registry, max_concurrent=0)


class TestExecutionPolicies:
    """Test execute_all under both policies."""

    @pytest.mark.asyncio
    async def test_sequential_order(self, registry):
        executor = ToolExecutor(registry)
        results = await executor.execute_all([
            request("t1", "sleep", seconds=0.02, label="first"),
            request("t2", "fail"),
            request("t3", "sleep", seconds=0.0, label="third"),
        ])
        assert [r.id for r in results] == ["t1", "t2", "t3"]
        assert [r.success for r in results] == [True, False, True]
        assert results[0].data == "first"

    @pytest.mark.asyncio
    async def test_concurrent_pairs_results_with_requests(self, registry):
        executor = ToolExecutor(registry, policy=ToolExecutionPolicy.CONCURRENT)
        results = await executor.execute_all([
            request("slow", "sleep", seconds=0.05, label="slow"),
            request("fast", "sleep", seconds=0.0, label="fast"),
            request("broken", "fail"),
        ])
        assert [r.id for r in results] == ["slow", "fast", "broken"]
        assert [r.data for r in results[:2]] == ["slow", "fast"]
        assert results[2].error_message == "RuntimeError: disk full"

    @pytest.mark.asyncio
    async def test_concurrent_runs_together(self, registry):
        executor = ToolExecutor(registry, policy=ToolExecutionPolicy.CONCURRENT, max_concurrent=4)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await executor.execute_all([request(f"t{i}", "sleep", seconds=0.1) for i in range(4)])
        assert loop.time() - start < 0.35

    @pytest.mark.asyncio
    async def test_duplicate_ids_kept_separately(self, registry):
        executor = ToolExecutor(registry, policy=ToolExecutionPolicy.CONCURRENT)
        results = await executor.execute_all([
            request("dup", "add", a=1, b=1),
            request("dup", "add", a=2, b=2),
        ])
        assert [r.data for r in results] == [2, 4]

    @pytest.mark.asyncio
    async def test_should_stop_skips_remaining(self, registry):
        calls = []

        def should_stop() -> bool:
            calls.append(1)
            return len(calls) > 1

        results = await ToolExecutor(registry).execute_all(
            [request("t1", "add", a=1, b=1), request("t2", "add", a=2, b=2)],
            should_stop=should_stop,
        )
        assert results[0].success
        assert results[1].error_message == "Skipped: request cancelled"


# =============================================================================
# Test: Result Formatting
# =============================================================================


class TestResultFormatting:
    """Test how results are fed back to the model."""

    def test_content_text_json(self):
        result = ToolExecutionResult(id="t1", name="search", success=True, data={"hits": 3})
        assert result.content_text() == '{"hits": 3}'

    def test_failed_block(self):
        result = ToolExecutionResult(id="t1", name="search", success=False, error_message="boom")
        assert result.to_block() == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": "Error: boom",
            "is_error": True,
        }

    def test_truncate_tool_output(self):
        text = "x" * 1000
        truncated = truncate_tool_output(text, max_tokens=10)
        assert truncated.startswith("x" * 40 + "\n\n[Truncated: Original 250 tokens -> 10 tokens]")
        assert truncate_tool_output("short", 10) == "short"

    def test_result_message_holds_every_block(self):
        results = [
            ToolExecutionResult(id="t1", name="a", success=True, data="one"),
            ToolExecutionResult(id="t2", name="b", success=False, error_message="two"),
        ]
        message = build_tool_result_message(results, max_tokens=100)
        assert message["role"] == "user"
        assert [b["tool_use_id"] for b in message["content"]] == ["t1", "t2"]

    def test_summarize_input(self):
        assert summarize_input({"city": "Paris", "days": 3}) == "city=Paris, days=3"
        summary = summarize_input({"query": "q" * 100})
        assert summary == "query=" + "q" * 37 + "..."
        assert len(summarize_input({f"k{i}": "v" * 30 for i in range(10)})) == 120
