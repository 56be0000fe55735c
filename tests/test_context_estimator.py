"""Tests for token estimation.

Test Coverage:
- Plain text estimation and the empty case
- Per-message overhead and tool references
- Content block pricing, including images
- Precomputed estimates
- Whole-request estimation with tools and system prompt
"""

from __future__ import annotations

import math

from conftest import make_message

from keel.context.estimator import (
    IMAGE_TOKENS,
    MESSAGE_OVERHEAD_TOKENS,
    TOOL_REFERENCE_TOKENS,
    compression_ratio,
    estimate,
    estimate_block,
    estimate_conversation,
    estimate_message,
    estimate_messages,
    estimate_text,
    estimate_tools,
    with_token_estimates,
)
from keel.context.messages import Role


class TestEstimateText:
    """Test plain text estimation."""

    def test_empty_text_is_zero(self):
        assert estimate_text("") == 0
        assert estimate_text(None) == 0

    def test_rounds_up(self):
        assert estimate_text("a") == 1
        assert estimate_text("abcd") == 1
        assert estimate_text("abcde") == 2

    def test_deterministic(self):
        text = "The deploy failed at 03:12 with exit code 137." * 20
        assert estimate_text(text) == estimate_text(text)
        assert estimate_text(text) == math.ceil(len(text) / 4)


class TestEstimateMessage:
    """Test message estimation."""

    def test_overhead_added(self):
        message = make_message("x" * 40)
        assert estimate_message(message) == 10 + MESSAGE_OVERHEAD_TOKENS

    def test_empty_message_costs_overhead_only(self):
        assert estimate_message(make_message("")) == MESSAGE_OVERHEAD_TOKENS

    def test_tool_references(self):
        message = make_message("x" * 40, role=Role.ASSISTANT, tools_used=("search", "fetch"))
        assert estimate_message(message) == 10 + MESSAGE_OVERHEAD_TOKENS + 2 * TOOL_REFERENCE_TOKENS

    def test_duplicate_tools_counted_once(self):
        message = make_message("hi", tools_used=("search", "search"))
        assert message.tools_used == ("search",)

    def test_precomputed_estimate_wins(self):
        message = make_message("x" * 4000, token_estimate=7)
        assert estimate_message(message) == 7

    def test_blocks_replace_content(self):
        message = make_message(
            "ignored text that is long " * 10,
            blocks=({"type": "text", "text": "abcd"}, {"type": "image", "source": {}}),
        )
        assert estimate_message(message) == 1 + IMAGE_TOKENS + MESSAGE_OVERHEAD_TOKENS


class TestEstimateBlock:
    """Test content block pricing."""

    def test_image_is_fixed(self):
        assert estimate_block({"type": "image", "source": {"data": "x" * 100000}}) == IMAGE_TOKENS

    def test_tool_result_with_structured_content(self):
        tokens = estimate_block({"type": "tool_result", "tool_use_id": "t1", "content": [{"a": 1}]})
        assert tokens > 0

    def test_thinking_block(self):
        assert estimate_block({"type": "thinking", "thinking": "abcdefgh"}) == 2


class TestEstimateConversation:
    """Test whole-request estimation."""

    def test_sum_of_messages(self):
        messages = [make_message("x" * 40), make_message("y" * 80, role=Role.ASSISTANT)]
        assert estimate_messages(messages) == (10 + 4) + (20 + 4)
        assert estimate(messages) == estimate_messages(messages)

    def test_estimate_dispatch(self):
        assert estimate(None) == 0
        assert estimate("abcd") == 1
        assert estimate(make_message("abcd")) == 5

    def test_request_overhead(self):
        messages = [make_message("x" * 400)]
        base = estimate_text("system!!") + estimate_messages(messages)
        assert estimate_conversation(messages, system_prompt="system!!") == math.ceil(base * 1.05)

    def test_tools_add_tokens(self):
        messages = [make_message("hello")]
        tools = [{"name": "search", "description": "Search the web", "input_schema": {"type": "object"}}]
        assert estimate_tools(tools) > 0
        assert estimate_conversation(messages, tools) > estimate_conversation(messages)


class TestHelpers:
    """Test estimation helpers."""

    def test_compression_ratio(self):
        assert compression_ratio(100, 25) == 0.75
        assert compression_ratio(0, 0) == 0.0

    def test_with_token_estimates(self):
        messages = with_token_estimates([make_message("x" * 40)])
        assert messages[0].token_estimate == 14
