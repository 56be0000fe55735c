"""Budget Enforcer - hard token ceilings and per-user monthly spend limits.

Key Components:
    - BudgetConfig: Immutable per-conversation limits
    - BudgetState: Derived usage snapshot, recomputed on every check
    - TokenBudget: Enforcer with binary-search truncation and user allowance
      checks backed by the conversation store's usage ledger

Budget violations never raise inside the loop: conversations are truncated
to fit and a rejected user allowance is reported as data. Users without a
configured monthly ceiling are always allowed.

Example:
    >>> budget = TokenBudget(BudgetConfig(max_tokens_per_conversation=8000))
    >>> status = budget.get_status(messages, system_prompt="You are helpful.")
    >>> if status.is_over_budget:
    ...     messages = budget.truncate_to_fit(messages).messages
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, TYPE_CHECKING

from keel.context.estimator import estimate_conversation
from keel.context.messages import Message, TruncationResult
from keel.core.exceptions import BudgetExceededError, ConfigurationError

if TYPE_CHECKING:
    from keel.config.settings import BudgetSettings
    from keel.state.store import ConversationStore


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

CAUTION_PERCENT = 50

RECOMMEND_TRUNCATE = "TRUNCATE: Conversation exceeds token budget. Remove old messages."
RECOMMEND_WARNING = "WARNING: Approaching token limit. Consider summarizing or truncating."
RECOMMEND_CAUTION = "CAUTION: Over 50% of budget used. Monitor token usage."
RECOMMEND_OK = "OK: Token usage is within normal limits."


# =============================================================================
# Budget Types
# =============================================================================


@dataclass(frozen=True)
class BudgetConfig:
    """Immutable per-conversation token limits.

    Attributes:
        max_tokens_per_conversation: Ceiling for one engine request's context
        max_tokens_per_message: Ceiling for a single message
        max_tokens_per_request: Ceiling for a request including output
        warning_threshold: Fraction (0.0-1.0] that marks "near limit"
        min_messages: Fewest messages truncation may keep
    """

    max_tokens_per_conversation: int = 100000
    max_tokens_per_message: int = 8192
    max_tokens_per_request: int = 200000
    warning_threshold: float = 0.8
    min_messages: int = 2

    def __post_init__(self) -> None:
        if self.max_tokens_per_conversation <= 0:
            raise ConfigurationError(
                "max_tokens_per_conversation must be positive",
                config_key="max_tokens_per_conversation",
            )
        if self.max_tokens_per_message <= 0 or self.max_tokens_per_request <= 0:
            raise ConfigurationError(
                "per-message and per-request limits must be positive",
                config_key="max_tokens_per_message",
            )
        if not 0.0 < self.warning_threshold <= 1.0:
            raise ConfigurationError(
                "warning_threshold must be in (0.0, 1.0]",
                config_key="warning_threshold",
                validation_details=f"warning_threshold={self.warning_threshold}",
            )
        if self.min_messages < 1:
            raise ConfigurationError("min_messages must be at least 1", config_key="min_messages")

    @classmethod
    def from_settings(cls, settings: "BudgetSettings") -> "BudgetConfig":
        return cls(
            max_tokens_per_conversation=settings.max_tokens_per_conversation,
            max_tokens_per_message=settings.max_tokens_per_message,
            max_tokens_per_request=settings.max_tokens_per_request,
            warning_threshold=settings.warning_threshold,
            min_messages=settings.min_messages,
        )


@dataclass(frozen=True)
class BudgetState:
    """Usage snapshot against a limit. Derived, never stored."""

    used_tokens: int
    limit_tokens: int
    warning_threshold: float = 0.8

    @property
    def remaining(self) -> int:
        return max(self.limit_tokens - self.used_tokens, 0)

    @property
    def percent_used(self) -> float:
        return self.used_tokens / self.limit_tokens * 100

    @property
    def is_over_budget(self) -> bool:
        return self.used_tokens > self.limit_tokens

    @property
    def is_near_limit(self) -> bool:
        return self.percent_used >= self.warning_threshold * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_tokens": self.used_tokens,
            "limit_tokens": self.limit_tokens,
            "remaining": self.remaining,
            "percent_used": round(self.percent_used, 2),
            "is_over_budget": self.is_over_budget,
            "is_near_limit": self.is_near_limit,
        }


@dataclass(frozen=True)
class UserBudgetStatus:
    """Monthly spend of one user against their ceiling."""

    user_id: str
    total_cost_cents: float
    limit_cents: float
    total_tokens: int = 0
    total_calls: int = 0
    warning_threshold: float = 0.8

    @property
    def percent_used(self) -> float:
        if self.limit_cents <= 0:
            return 100.0
        return self.total_cost_cents / self.limit_cents * 100

    @property
    def is_over_budget(self) -> bool:
        return self.total_cost_cents >= self.limit_cents

    @property
    def is_near_limit(self) -> bool:
        return self.percent_used >= self.warning_threshold * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_cost_cents": self.total_cost_cents,
            "limit_cents": self.limit_cents,
            "percent_used": round(self.percent_used, 2),
            "is_over_budget": self.is_over_budget,
            "is_near_limit": self.is_near_limit,
            "total_tokens": self.total_tokens,
            "total_calls": self.total_calls,
        }


@dataclass(frozen=True)
class AllowanceDecision:
    """Whether a user may make a request."""

    allowed: bool
    reason: Optional[str] = None
    status: Optional[UserBudgetStatus] = None


# =============================================================================
# Token Budget
# =============================================================================


class TokenBudget:
    """Enforces per-conversation token limits and per-user spend limits.

    Example:
        >>> budget = TokenBudget(store=store)
        >>> decision = await budget.can_user_make_request("user-1", 12.5)
        >>> if not decision.allowed:
        ...     print(decision.reason)
    """

    def __init__(
        self,
        config: Optional[BudgetConfig] = None,
        store: Optional["ConversationStore"] = None,
    ) -> None:
        self._config = config or BudgetConfig()
        self._store = store

    @property
    def config(self) -> BudgetConfig:
        return self._config

    def _count(
        self,
        messages: Sequence[Message],
        tools: Optional[Sequence[dict[str, Any]]],
        system_prompt: Optional[str],
    ) -> int:
        return estimate_conversation(messages, tools, system_prompt)

    def get_status(
        self,
        messages: Sequence[Message],
        tools: Optional[Sequence[dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> BudgetState:
        """Usage of a prospective request against the conversation limit."""
        return BudgetState(
            used_tokens=self._count(messages, tools, system_prompt),
            limit_tokens=self._config.max_tokens_per_conversation,
            warning_threshold=self._config.warning_threshold,
        )

    def can_add(
        self,
        messages: Sequence[Message],
        tools: Optional[Sequence[dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> bool:
        """Whether the request fits within the conversation limit."""
        return not self.get_status(messages, tools, system_prompt).is_over_budget

    def truncate_to_fit(
        self,
        messages: Sequence[Message],
        tools: Optional[Sequence[dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        min_messages: Optional[int] = None,
    ) -> TruncationResult:
        """Keep the longest suffix of ``messages`` that fits the limit.

        Binary search over the number of most-recent messages kept. The
        result never holds fewer than ``min_messages`` messages, even when
        that suffix alone is over the limit.
        """
        floor = self._config.min_messages if min_messages is None else min_messages
        limit = self._config.max_tokens_per_conversation
        total = len(messages)

        if total <= floor:
            kept = list(messages)
            return TruncationResult(kept, self._count(kept, tools, system_prompt), 0)

        best = floor
        best_tokens = self._count(messages[total - floor:], tools, system_prompt)
        low, high = floor + 1, total
        while low <= high:
            mid = (low + high) // 2
            tokens = self._count(messages[total - mid:], tools, system_prompt)
            if tokens <= limit:
                best, best_tokens = mid, tokens
                low = mid + 1
            else:
                high = mid - 1

        kept = list(messages[total - best:])
        if best < total:
            logger.debug(
                f"[Budget] Truncated {total} -> {best} messages "
                f"({best_tokens}/{limit} tokens)"
            )
        return TruncationResult(kept, best_tokens, total - best)

    def recommendation(
        self,
        messages: Sequence[Message],
        tools: Optional[Sequence[dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        """Human-readable advice for the current usage."""
        status = self.get_status(messages, tools, system_prompt)
        if status.is_over_budget:
            return RECOMMEND_TRUNCATE
        if status.is_near_limit:
            return RECOMMEND_WARNING
        if status.percent_used > CAUTION_PERCENT:
            return RECOMMEND_CAUTION
        return RECOMMEND_OK

    # -------------------------------------------------------------------------
    # User Budgets
    # -------------------------------------------------------------------------

    async def user_budget_status(self, user_id: str) -> Optional[UserBudgetStatus]:
        """Monthly spend status, or None when the user has no ceiling."""
        if self._store is None:
            return None
        limit = await self._store.get_user_budget(user_id)
        if limit is None:
            return None
        usage = await self._store.get_monthly_usage(user_id)
        return UserBudgetStatus(
            user_id=user_id,
            total_cost_cents=usage.total_cost_cents,
            limit_cents=limit,
            total_tokens=usage.total_tokens,
            total_calls=usage.total_calls,
            warning_threshold=self._config.warning_threshold,
        )

    async def can_user_make_request(
        self,
        user_id: str,
        estimated_cost_cents: float = 0.0,
    ) -> AllowanceDecision:
        """Compare projected monthly spend with the user's ceiling.

        Users without a ceiling are allowed.
        """
        status = await self.user_budget_status(user_id)
        if status is None:
            return AllowanceDecision(allowed=True)

        projected = status.total_cost_cents + estimated_cost_cents
        if projected > status.limit_cents:
            reason = (
                f"Monthly budget exceeded ({projected / 100:.2f} > "
                f"{status.limit_cents / 100:.2f})"
            )
            logger.info(f"[Budget] Rejected request for {user_id}: {reason}")
            return AllowanceDecision(allowed=False, reason=reason, status=status)
        return AllowanceDecision(allowed=True, status=status)

    async def require_user_allowance(
        self,
        user_id: str,
        estimated_cost_cents: float = 0.0,
    ) -> None:
        """Like ``can_user_make_request`` but raises when rejected.

        Raises:
            BudgetExceededError: If the request would exceed the ceiling.
        """
        decision = await self.can_user_make_request(user_id, estimated_cost_cents)
        if not decision.allowed:
            status = decision.status
            raise BudgetExceededError(
                decision.reason or "Monthly budget exceeded",
                user_id=user_id,
                projected_cents=(status.total_cost_cents + estimated_cost_cents) if status else 0.0,
                limit_cents=status.limit_cents if status else 0.0,
            )

    async def set_user_budget(
        self,
        user_id: str,
        limit_cents: float,
        alert_thresholds: Sequence[int] = (50, 75, 90),
    ) -> None:
        if self._store is None:
            raise ConfigurationError("No conversation store configured for user budgets")
        if limit_cents < 0:
            raise ValueError("limit_cents cannot be negative")
        await self._store.set_user_budget(user_id, limit_cents, alert_thresholds)

    async def record_usage(self, user_id: str, tokens: int, cost_cents: float) -> None:
        if self._store is None:
            return
        await self._store.record_usage(user_id, tokens, cost_cents)


__all__ = [
    "BudgetConfig",
    "BudgetState",
    "UserBudgetStatus",
    "AllowanceDecision",
    "TokenBudget",
    "RECOMMEND_TRUNCATE",
    "RECOMMEND_WARNING",
    "RECOMMEND_CAUTION",
    "RECOMMEND_OK",
]
