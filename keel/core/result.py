"""Boundary results for best-effort calls.

Calls that are allowed to fail without failing the request (the summarizer,
the retrieval store) return an Outcome instead of raising. Callers pick a
fallback explicitly with ``degrade`` so the degradation path is visible at
the call site.

Key Components:
    - Outcome: Success value or captured KeelError
    - capture: Await a coroutine and wrap its result or error
    - degrade: Resolve an Outcome to its value or a fallback

Example:
    >>> outcome = await capture(summarizer(prompt), SummarizationError)
    >>> text = degrade(outcome, lambda: simple_summary(messages), "summarizer")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from keel.core.exceptions import KeelError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a best-effort call.

    Attributes:
        value: The produced value when the call succeeded
        error: The captured error when the call failed
    """

    value: Optional[T] = None
    error: Optional[KeelError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: KeelError) -> "Outcome[T]":
        return cls(error=error)


async def capture(
    call: Awaitable[T],
    error_type: Callable[[str], KeelError],
) -> Outcome[T]:
    """Await ``call`` and wrap the result.

    KeelErrors pass through as-is; any other exception is wrapped with
    ``error_type`` so the outcome always carries a KeelError.

    Args:
        call: Awaitable to run.
        error_type: Factory building a KeelError from a message.

    Returns:
        Outcome holding the value or the error.
    """
    try:
        return Outcome.success(await call)
    except KeelError as e:
        return Outcome.failure(e)
    except Exception as e:
        return Outcome.failure(error_type(f"{type(e).__name__}: {e}"))


def degrade(
    outcome: Outcome[T],
    fallback: Callable[[], T],
    label: str = "call",
) -> T:
    """Return the outcome's value, or the fallback's when it failed.

    Args:
        outcome: Outcome to resolve.
        fallback: Producer for the degraded value.
        label: Name used in the degradation log line.

    Returns:
        The successful value or the fallback value.
    """
    if outcome.ok:
        return outcome.value  # type: ignore[return-value]
    logger.warning(f"[Degrade] {label} failed, using fallback: {outcome.error}")
    return fallback()


__all__ = [
    "Outcome",
    "capture",
    "degrade",
]
