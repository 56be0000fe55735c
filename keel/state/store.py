"""Conversation store protocol and in-memory implementation.

The store is the external collaborator behind retrieval and the usage
ledger. The agent runtime only reads messages, appends new ones at the end
of a request, records usage and looks up per-user monthly budgets.

Protocols:
    ConversationStore: Message history and usage ledger operations.

Classes:
    MemoryConversationStore: In-memory store guarded by an asyncio lock.

Example:
    >>> store = MemoryConversationStore()
    >>> await store.append_messages("conv-1", [Message(role=Role.USER, content="hi")])
    >>> await store.set_user_budget("user-1", limit_cents=2000)
    >>> await store.record_usage("user-1", tokens=1200, cost_cents=0.9)
    >>> summary = await store.get_monthly_usage("user-1")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Sequence, runtime_checkable

from keel.context.messages import Message, utc_now


DEFAULT_ALERT_THRESHOLDS = (50, 75, 90)


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class UsageRecord:
    """One recorded request.

    Attributes:
        user_id: User charged for the request
        tokens: Total tokens used
        cost_cents: Cost in cents
        recorded_at: When the usage was recorded
    """

    user_id: str
    tokens: int
    cost_cents: float
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class UserBudget:
    """Monthly spend ceiling for one user."""

    user_id: str
    limit_cents: float
    alert_thresholds: tuple[int, ...] = DEFAULT_ALERT_THRESHOLDS


@dataclass(frozen=True)
class UsageSummary:
    """Aggregated usage for one user over a period."""

    total_cost_cents: float = 0.0
    total_tokens: int = 0
    total_calls: int = 0


# =============================================================================
# Store Protocol
# =============================================================================


@runtime_checkable
class ConversationStore(Protocol):
    """Protocol for message history and usage ledger storage.

    Implementations must be safe for concurrent use by several in-flight
    agent loops.
    """

    async def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """List messages of a conversation in chronological order.

        Args:
            conversation_id: Conversation to read.
            limit: Return only the most recent ``limit`` messages.

        Raises:
            StoreError: If the store cannot be read.
        """
        ...

    async def append_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Append messages to a conversation."""
        ...

    async def record_usage(self, user_id: str, tokens: int, cost_cents: float) -> None:
        """Record usage for a user."""
        ...

    async def get_user_budget(self, user_id: str) -> Optional[float]:
        """Monthly limit in cents, or None when the user has no budget."""
        ...

    async def set_user_budget(
        self,
        user_id: str,
        limit_cents: float,
        alert_thresholds: Sequence[int] = DEFAULT_ALERT_THRESHOLDS,
    ) -> None:
        """Create or replace a user's monthly budget."""
        ...

    async def get_monthly_usage(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> UsageSummary:
        """Aggregate a user's usage for the calendar month containing ``now``."""
        ...


# =============================================================================
# Memory Store
# =============================================================================


class MemoryConversationStore:
    """In-memory conversation store.

    Data is lost when the process ends. Safe for concurrent coroutines
    through a single asyncio lock.

    Example:
        >>> store = MemoryConversationStore()
        >>> await store.append_messages("c1", messages)
        >>> assert len(await store.list_messages("c1")) == len(messages)
        >>> store.clear()
    """

    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}
        self._usage: list[UsageRecord] = []
        self._budgets: dict[str, UserBudget] = {}
        self._lock = asyncio.Lock()

    async def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
    ) -> list[Message]:
        async with self._lock:
            messages = list(self._messages.get(conversation_id, []))
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def append_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        async with self._lock:
            self._messages.setdefault(conversation_id, []).extend(messages)

    async def record_usage(self, user_id: str, tokens: int, cost_cents: float) -> None:
        async with self._lock:
            self._usage.append(UsageRecord(user_id=user_id, tokens=tokens, cost_cents=cost_cents))

    async def get_user_budget(self, user_id: str) -> Optional[float]:
        async with self._lock:
            budget = self._budgets.get(user_id)
        return budget.limit_cents if budget else None

    async def set_user_budget(
        self,
        user_id: str,
        limit_cents: float,
        alert_thresholds: Sequence[int] = DEFAULT_ALERT_THRESHOLDS,
    ) -> None:
        async with self._lock:
            self._budgets[user_id] = UserBudget(
                user_id=user_id,
                limit_cents=limit_cents,
                alert_thresholds=tuple(alert_thresholds),
            )

    async def get_monthly_usage(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> UsageSummary:
        now = now or utc_now()
        async with self._lock:
            records = [
                r for r in self._usage
                if r.user_id == user_id
                and (r.recorded_at.year, r.recorded_at.month) == (now.year, now.month)
            ]
        return UsageSummary(
            total_cost_cents=sum(r.cost_cents for r in records),
            total_tokens=sum(r.tokens for r in records),
            total_calls=len(records),
        )

    def clear(self) -> None:
        """Clear all stored data."""
        self._messages.clear()
        self._usage.clear()
        self._budgets.clear()


__all__ = [
    "ConversationStore",
    "MemoryConversationStore",
    "UsageRecord",
    "UsageSummary",
    "UserBudget",
    "DEFAULT_ALERT_THRESHOLDS",
]
