"""Tests for the Anthropic reasoning engine.

Test Coverage:
- Request parameters built from a ModelRequest
- Fragments pushed in block order, with tool_use blocks whole
- Final response assembled from the final message
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from keel.agent.llm import AnthropicReasoningEngine, BlockType, ContentBlock, ModelRequest


class FakeMessageStream:
    """Async context manager standing in for the SDK message stream."""

    def __init__(self, events, final) -> None:
        self._events = events
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def get_final_message(self):
        return self._final


def api_block(**fields) -> SimpleNamespace:
    return SimpleNamespace(**fields)


@pytest.fixture
def interleaved_stream() -> FakeMessageStream:
    text_a = api_block(type="text", text="A")
    tool = api_block(type="tool_use", id="t1", name="echo", input={"text": "hi"})
    text_b = api_block(type="text", text="B")
    events = [
        api_block(type="text", text="A"),
        api_block(type="content_block_stop", index=0, content_block=text_a),
        api_block(type="input_json", partial_json='{"text": "hi"}'),
        api_block(type="content_block_stop", index=1, content_block=tool),
        api_block(type="text", text="B"),
        api_block(type="content_block_stop", index=2, content_block=text_b),
        api_block(type="message_stop"),
    ]
    final = api_block(
        content=[text_a, tool, text_b],
        stop_reason="tool_use",
        usage=api_block(input_tokens=12, output_tokens=7),
        model="claude-test",
    )
    return FakeMessageStream(events, final)


def make_engine(stream: FakeMessageStream) -> tuple[AnthropicReasoningEngine, MagicMock]:
    client = MagicMock()
    client.messages.stream = MagicMock(return_value=stream)
    return AnthropicReasoningEngine("anthropic:claude-test", client=client), client


# =============================================================================
# Test: Streaming
# =============================================================================


class TestAnthropicStreaming:
    """Test fragment delivery and response assembly."""

    @pytest.mark.asyncio
    async def test_fragments_in_block_order(self, interleaved_stream):
        engine, _ = make_engine(interleaved_stream)
        received = []

        async def on_fragment(kind, fragment):
            received.append((kind, fragment))

        request = ModelRequest(system_prompt="", messages=[{"role": "user", "content": "Hi"}])
        await engine.complete(request, on_fragment)

        assert [kind for kind, _ in received] == [BlockType.TEXT, BlockType.TOOL_USE, BlockType.TEXT]
        assert received[0][1] == "A"
        assert received[1][1] == ContentBlock.tool_use("t1", "echo", {"text": "hi"})
        assert received[2][1] == "B"

    @pytest.mark.asyncio
    async def test_response_from_final_message(self, interleaved_stream):
        engine, client = make_engine(interleaved_stream)

        response = await engine.complete(ModelRequest(
            system_prompt="Be brief.",
            messages=[{"role": "user", "content": "Hi"}],
            max_output_tokens=256,
        ))

        assert engine.model == "claude-test"
        params = client.messages.stream.call_args.kwargs
        assert params["model"] == "claude-test"
        assert params["system"] == "Be brief."
        assert params["max_tokens"] == 256
        assert "tools" not in params
        assert response.text == "AB"
        assert [r.id for r in response.tool_requests] == ["t1"]
        assert response.stop_reason == "tool_use"
        assert (response.input_tokens, response.output_tokens) == (12, 7)
