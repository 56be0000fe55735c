"""Tests for the in-memory conversation store.

Test Coverage:
- Message append and listing with limits
- Usage records and monthly aggregation
- User budgets
- Protocol conformance
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_conversation

from keel.state.store import ConversationStore, MemoryConversationStore


class TestMessages:
    """Test message persistence."""

    @pytest.mark.asyncio
    async def test_append_and_list(self):
        store = MemoryConversationStore()
        messages = make_conversation(5)
        await store.append_messages("c1", messages[:3])
        await store.append_messages("c1", messages[3:])
        assert await store.list_messages("c1") == messages

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent(self):
        store = MemoryConversationStore()
        messages = make_conversation(5)
        await store.append_messages("c1", messages)
        assert await store.list_messages("c1", limit=2) == messages[-2:]
        assert await store.list_messages("c1", limit=0) == []

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self):
        store = MemoryConversationStore()
        await store.append_messages("c1", make_conversation(2))
        assert await store.list_messages("c2") == []

    @pytest.mark.asyncio
    async def test_listing_is_a_copy(self):
        store = MemoryConversationStore()
        await store.append_messages("c1", make_conversation(2))
        listed = await store.list_messages("c1")
        listed.clear()
        assert len(await store.list_messages("c1")) == 2


class TestUsage:
    """Test usage records and budgets."""

    @pytest.mark.asyncio
    async def test_monthly_usage(self):
        store = MemoryConversationStore()
        await store.record_usage("u1", 1000, 12.5)
        await store.record_usage("u1", 500, 2.5)
        await store.record_usage("u2", 100, 1.0)

        summary = await store.get_monthly_usage("u1")
        assert summary.total_tokens == 1500
        assert summary.total_cost_cents == 15.0
        assert summary.total_calls == 2

    @pytest.mark.asyncio
    async def test_other_month_excluded(self):
        store = MemoryConversationStore()
        await store.record_usage("u1", 1000, 12.5)
        summary = await store.get_monthly_usage("u1", now=datetime(2001, 1, 1, tzinfo=timezone.utc))
        assert summary.total_calls == 0

    @pytest.mark.asyncio
    async def test_user_budget(self):
        store = MemoryConversationStore()
        assert await store.get_user_budget("u1") is None
        await store.set_user_budget("u1", 500.0, alert_thresholds=[80])
        assert await store.get_user_budget("u1") == 500.0

    @pytest.mark.asyncio
    async def test_clear(self):
        store = MemoryConversationStore()
        await store.append_messages("c1", make_conversation(2))
        await store.record_usage("u1", 10, 1.0)
        await store.set_user_budget("u1", 5.0)
        store.clear()
        assert await store.list_messages("c1") == []
        assert (await store.get_monthly_usage("u1")).total_calls == 0
        assert await store.get_user_budget("u1") is None


def test_memory_store_satisfies_protocol():
    assert isinstance(MemoryConversationStore(), ConversationStore)
