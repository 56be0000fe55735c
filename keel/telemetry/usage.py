"""Model pricing and per-request usage tracking.

Key Components:
    - ModelPricing: Immutable price per million tokens, in cents
    - estimate_cost_cents: Price a call from its token counts
    - UsageTracker: Cumulative usage across the model calls of one request

Example:
    >>> tracker = UsageTracker()
    >>> tracker.record_usage(1000, 500, model="claude-sonnet-4-20250514")
    >>> tracker.total_tokens
    1500
    >>> round(tracker.cost_cents, 2)
    1.05
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ModelPricing:
    """Price of one model in cents per million tokens.

    Attributes:
        model: Model identifier
        input_cents_per_million: Input price
        output_cents_per_million: Output price
    """

    model: str
    input_cents_per_million: float
    output_cents_per_million: float

    def __post_init__(self) -> None:
        if self.input_cents_per_million < 0 or self.output_cents_per_million < 0:
            raise ValueError("Prices cannot be negative")

    def cost_cents(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_cents_per_million
            + output_tokens * self.output_cents_per_million
        ) / 1_000_000


SONNET_PRICING = ModelPricing("claude-sonnet-4-20250514", 300, 1500)
OPUS_PRICING = ModelPricing("claude-opus-4-20250514", 1500, 7500)
HAIKU_PRICING = ModelPricing("claude-3-5-haiku-latest", 80, 400)

MODEL_PRICING: dict[str, ModelPricing] = {
    "sonnet": SONNET_PRICING,
    "opus": OPUS_PRICING,
    "haiku": HAIKU_PRICING,
}


def resolve_pricing(model: Optional[str]) -> ModelPricing:
    """Pricing for ``model`` by family name; unknown models price as sonnet."""
    name = (model or "").lower()
    for family, pricing in MODEL_PRICING.items():
        if family in name:
            return pricing
    return SONNET_PRICING


def estimate_cost_cents(model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    """Cost of one call in cents."""
    return resolve_pricing(model).cost_cents(input_tokens, output_tokens)


def estimate_request_cost_cents(
    model: Optional[str],
    input_tokens: int,
    max_output_tokens: int,
) -> float:
    """Upper-bound cost of a request before it is sent, rounded up to a cent."""
    return float(math.ceil(estimate_cost_cents(model, input_tokens, max_output_tokens)))


@dataclass
class UsageTracker:
    """Tracks cumulative usage across the model calls of one request.

    Attributes:
        input_tokens: Cumulative input tokens consumed
        output_tokens: Cumulative output tokens consumed
        call_count: Number of model calls recorded
        cost_cents: Cumulative cost in cents
        by_model: Token totals per model
    """

    input_tokens: int = 0
    output_tokens: int = 0
    call_count: int = 0
    cost_cents: float = 0.0
    by_model: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        model: Optional[str] = None,
    ) -> None:
        """Record token usage from a single model call.

        Raises:
            ValueError: If token counts are negative
        """
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("Token counts cannot be negative")

        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.call_count += 1
        self.cost_cents += estimate_cost_cents(model, input_tokens, output_tokens)

        key = model or "unknown"
        totals = self.by_model.setdefault(key, {"input_tokens": 0, "output_tokens": 0})
        totals["input_tokens"] += input_tokens
        totals["output_tokens"] += output_tokens

    def reset(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.call_count = 0
        self.cost_cents = 0.0
        self.by_model = {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "call_count": self.call_count,
            "cost_cents": round(self.cost_cents, 4),
        }


__all__ = [
    "ModelPricing",
    "MODEL_PRICING",
    "SONNET_PRICING",
    "OPUS_PRICING",
    "HAIKU_PRICING",
    "resolve_pricing",
    "estimate_cost_cents",
    "estimate_request_cost_cents",
    "UsageTracker",
]
