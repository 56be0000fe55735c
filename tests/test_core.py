"""Tests for the Keel core module (exceptions and boundary results).

Test Coverage:
- Exception hierarchy and error codes
- Context captured by each exception type
- Structured logging output
- Outcome, capture and degrade
"""

from __future__ import annotations

import logging

import pytest

from keel.core.exceptions import (
    BudgetExceededError,
    ConfigurationError,
    KeelError,
    ModelCallError,
    ModelTimeoutError,
    RetrievalError,
    StoreError,
    SummarizationError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from keel.core.result import Outcome, capture, degrade


# =============================================================================
# Test: Exception Hierarchy
# =============================================================================


class TestExceptionHierarchy:
    """Test the exception tree."""

    def test_keel_error_is_base(self):
        for error_type in (
            ConfigurationError,
            ModelCallError,
            ToolError,
            SummarizationError,
            RetrievalError,
            StoreError,
            BudgetExceededError,
        ):
            assert issubclass(error_type, KeelError)

    def test_specialized_errors(self):
        assert issubclass(ModelTimeoutError, ModelCallError)
        assert issubclass(ToolNotFoundError, ToolError)
        assert issubclass(ToolExecutionError, ToolError)
        assert issubclass(ToolTimeoutError, ToolError)


class TestKeelError:
    """Test the KeelError base exception."""

    def test_defaults(self):
        error = KeelError("Something went wrong")
        assert error.message == "Something went wrong"
        assert error.code == "KEEL_ERROR"
        assert error.context == {}
        assert not error.recoverable

    def test_str_format(self):
        assert str(KeelError("Test message", code="MY_CODE")) == "[MY_CODE] Test message"

    def test_to_log_dict(self):
        error = StoreError("disk gone", operation="append_messages")
        assert error.to_log_dict() == {
            "error_type": "StoreError",
            "error_code": "STORE_ERROR",
            "message": "disk gone",
            "recoverable": False,
            "context": {"operation": "append_messages"},
        }


class TestSpecificErrors:
    """Test codes and context of each error type."""

    def test_configuration_error(self):
        error = ConfigurationError("bad", config_key="context.max_tokens")
        assert error.code == "CONFIG_ERROR"
        assert error.context["config_key"] == "context.max_tokens"

    def test_model_call_error(self):
        error = ModelCallError("overloaded", model="claude", status_code=529)
        assert error.code == "MODEL_CALL_ERROR"
        assert error.context == {"model": "claude", "status_code": 529}

    def test_model_timeout(self):
        error = ModelTimeoutError(2.5, model="claude")
        assert error.code == "MODEL_TIMEOUT"
        assert error.message == "Model call timed out after 2.5s"

    def test_tool_not_found(self):
        error = ToolNotFoundError("search", available_tools=["echo"])
        assert error.message == "Unknown tool: search"
        assert error.code == "TOOL_NOT_FOUND"
        assert error.available_tools == ["echo"]

    def test_tool_timeout_recoverable(self):
        error = ToolTimeoutError("search", 30)
        assert error.code == "TOOL_TIMEOUT"
        assert error.recoverable
        assert error.message == "Tool execution timed out after 30s"

    def test_degradable_errors_recoverable(self):
        assert SummarizationError("down").recoverable
        assert RetrievalError("down", conversation_id="c1").context == {"conversation_id": "c1"}

    def test_budget_exceeded(self):
        error = BudgetExceededError("over", user_id="u1", projected_cents=120.0, limit_cents=100.0)
        assert error.code == "BUDGET_EXCEEDED"
        assert error.context["limit_cents"] == 100.0


# =============================================================================
# Test: Boundary Results
# =============================================================================


class TestOutcome:
    """Test capture and degrade."""

    @pytest.mark.asyncio
    async def test_capture_success(self):
        async def produce() -> int:
            return 42

        outcome = await capture(produce(), StoreError)
        assert outcome.ok
        assert outcome.value == 42

    @pytest.mark.asyncio
    async def test_capture_wraps_foreign_exception(self):
        async def explode() -> int:
            raise OSError("connection refused")

        outcome = await capture(explode(), lambda msg: StoreError(msg, operation="read"))
        assert not outcome.ok
        assert isinstance(outcome.error, StoreError)
        assert outcome.error.message == "OSError: connection refused"

    @pytest.mark.asyncio
    async def test_capture_keeps_keel_errors(self):
        async def explode() -> int:
            raise SummarizationError("empty summary")

        outcome = await capture(explode(), StoreError)
        assert isinstance(outcome.error, SummarizationError)

    def test_degrade_success_skips_fallback(self):
        def fallback() -> int:
            raise AssertionError("fallback should not run")

        assert degrade(Outcome.success(1), fallback) == 1

    def test_degrade_failure_logs(self, caplog):
        outcome: Outcome[list] = Outcome.failure(RetrievalError("store offline"))
        with caplog.at_level(logging.WARNING, logger="keel.core.result"):
            assert degrade(outcome, list, "history") == []
        assert "history failed" in caplog.text
