"""Telemetry for the Keel runtime: budgets, usage and logging.

Usage:
    from keel.telemetry import TokenBudget, UsageTracker

    budget = TokenBudget(store=store)
    decision = await budget.can_user_make_request("user-1", 5.0)
"""

from keel.telemetry.budget import (
    AllowanceDecision,
    BudgetConfig,
    BudgetState,
    TokenBudget,
    UserBudgetStatus,
)
from keel.telemetry.usage import (
    ModelPricing,
    UsageTracker,
    estimate_cost_cents,
    resolve_pricing,
)
from keel.telemetry.logging import KeelLogAdapter, KeelLogFormatter, setup_logging

__all__ = [
    "AllowanceDecision",
    "BudgetConfig",
    "BudgetState",
    "TokenBudget",
    "UserBudgetStatus",
    "ModelPricing",
    "UsageTracker",
    "estimate_cost_cents",
    "resolve_pricing",
    "KeelLogAdapter",
    "KeelLogFormatter",
    "setup_logging",
]
