"""Conversation store for history and the usage ledger."""

from keel.state.store import (
    ConversationStore,
    MemoryConversationStore,
    UsageRecord,
    UsageSummary,
    UserBudget,
)

__all__ = [
    "ConversationStore",
    "MemoryConversationStore",
    "UsageRecord",
    "UsageSummary",
    "UserBudget",
]
