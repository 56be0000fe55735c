"""Core module for the Keel agent runtime.

This module contains the shared building blocks:
- Custom exceptions for error handling
- Outcome results for best-effort boundaries

Usage:
    from keel.core import KeelError

    try:
        await loop.run(request, stream)
    except KeelError as e:
        print(f"Error: {e.code} - {e.message}")
"""

from keel.core.exceptions import (
    KeelError,
    ConfigurationError,
    ModelCallError,
    ModelTimeoutError,
    ToolError,
    ToolNotFoundError,
    ToolExecutionError,
    ToolTimeoutError,
    SummarizationError,
    RetrievalError,
    StoreError,
    BudgetExceededError,
)
from keel.core.result import Outcome, capture, degrade

__all__ = [
    "KeelError",
    "ConfigurationError",
    "ModelCallError",
    "ModelTimeoutError",
    "ToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "SummarizationError",
    "RetrievalError",
    "StoreError",
    "BudgetExceededError",
    "Outcome",
    "capture",
    "degrade",
]
