"""Custom exceptions for the Keel agent runtime.

This module defines a hierarchy of exceptions used throughout Keel. All
exceptions inherit from KeelError, enabling catch-all exception handling
while still allowing specific exception types.

Exception Hierarchy:
    KeelError (base)
    ├── ConfigurationError: Invalid configuration or settings
    ├── ModelCallError: Reasoning engine call failed (fatal to a request)
    │   └── ModelTimeoutError: Reasoning engine call exceeded its ceiling
    ├── ToolError: Tool execution failures (captured as data by the loop)
    │   ├── ToolNotFoundError: Requested tool not registered
    │   ├── ToolExecutionError: Tool raised or reported failure
    │   └── ToolTimeoutError: Tool exceeded its ceiling
    ├── SummarizationError: Summarizer unavailable or failed (degrades)
    ├── RetrievalError: Retrieval store unavailable (degrades)
    ├── StoreError: Persistent store read/write failed
    └── BudgetExceededError: User monthly budget would be exceeded

Features:
    - Context information included in each exception type
    - Error codes for programmatic handling
    - Structured logging support via to_log_dict method
"""

from typing import Any, Optional


class KeelError(Exception):
    """Base exception for all Keel errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        context: Additional context information about the error
        recoverable: Whether the error is potentially recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KEEL_ERROR"
        self.context = context or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_log_dict(self) -> dict[str, Any]:
        """Return structured dict for logging.

        Returns:
            Dictionary with error details suitable for structured logging
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ConfigurationError(KeelError):
    """Raised when configuration is invalid or missing.

    Attributes:
        config_key: The configuration key that caused the error
        validation_details: Details about why validation failed
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        validation_details: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if config_key:
            context["config_key"] = config_key
        if validation_details:
            context["validation_details"] = validation_details
        super().__init__(message, code="CONFIG_ERROR", context=context, **kwargs)
        self.config_key = config_key
        self.validation_details = validation_details


class ModelCallError(KeelError):
    """Raised when a reasoning engine call fails.

    Attributes:
        model: Model identifier of the failed call
        status_code: HTTP status returned by the provider, if any
    """

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        code = kwargs.pop("code", "MODEL_CALL_ERROR")
        if model:
            context["model"] = model
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, code=code, context=context, **kwargs)
        self.model = model
        self.status_code = status_code


class ModelTimeoutError(ModelCallError):
    """Raised when a reasoning engine call exceeds its timeout."""

    def __init__(
        self,
        timeout_seconds: float,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        context["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"Model call timed out after {timeout_seconds}s",
            model=model,
            code="MODEL_TIMEOUT",
            context=context,
            **kwargs,
        )
        self.timeout_seconds = timeout_seconds


class ToolError(KeelError):
    """Base exception for tool execution errors.

    Attributes:
        tool_name: Name of the tool that encountered the error
        tool_parameters: Parameters passed to the tool
    """

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        tool_parameters: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        code = kwargs.pop("code", "TOOL_ERROR")
        if tool_name:
            context["tool_name"] = tool_name
        if tool_parameters:
            context["tool_parameters"] = tool_parameters
        super().__init__(message, code=code, context=context, **kwargs)
        self.tool_name = tool_name
        self.tool_parameters = tool_parameters


class ToolNotFoundError(ToolError):
    """Raised when a requested tool is not registered.

    Attributes:
        available_tools: List of tools that are available
    """

    def __init__(
        self,
        tool_name: str,
        available_tools: Optional[list[str]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if available_tools:
            context["available_tools"] = available_tools
        super().__init__(
            f"Unknown tool: {tool_name}",
            tool_name=tool_name,
            code="TOOL_NOT_FOUND",
            context=context,
            **kwargs,
        )
        self.available_tools = available_tools or []


class ToolExecutionError(ToolError):
    """Raised when tool execution fails.

    Attributes:
        partial_results: Any partial results obtained before failure
    """

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        partial_results: Optional[Any] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if partial_results is not None:
            context["partial_results"] = partial_results
        super().__init__(message, tool_name=tool_name, context=context, **kwargs)
        self.partial_results = partial_results


class ToolTimeoutError(ToolError):
    """Raised when a tool invocation exceeds its timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float, **kwargs: Any) -> None:
        context = kwargs.pop("context", {}) or {}
        context["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"Tool execution timed out after {timeout_seconds}s",
            tool_name=tool_name,
            code="TOOL_TIMEOUT",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.timeout_seconds = timeout_seconds


class SummarizationError(KeelError):
    """Raised when the external summarizer fails or is unavailable."""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.pop("context", {}) or {}
        if model:
            context["model"] = model
        super().__init__(
            message,
            code="SUMMARIZATION_ERROR",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.model = model


class RetrievalError(KeelError):
    """Raised when the retrieval store cannot be read."""

    def __init__(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if conversation_id:
            context["conversation_id"] = conversation_id
        super().__init__(
            message,
            code="RETRIEVAL_ERROR",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.conversation_id = conversation_id


class StoreError(KeelError):
    """Raised when the persistent store fails a read or write.

    Attributes:
        operation: Store operation that failed
    """

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.pop("context", {}) or {}
        if operation:
            context["operation"] = operation
        super().__init__(message, code="STORE_ERROR", context=context, **kwargs)
        self.operation = operation


class BudgetExceededError(KeelError):
    """Raised when a request would exceed a user's monthly budget.

    Attributes:
        user_id: User whose budget was checked
        projected_cents: Spend including the request
        limit_cents: Configured monthly ceiling
    """

    def __init__(
        self,
        message: str,
        user_id: str,
        projected_cents: float = 0.0,
        limit_cents: float = 0.0,
        **kwargs: Any,
    ) -> None:
        context = {
            "user_id": user_id,
            "projected_cents": projected_cents,
            "limit_cents": limit_cents,
        }
        super().__init__(message, code="BUDGET_EXCEEDED", context=context, **kwargs)
        self.user_id = user_id
        self.projected_cents = projected_cents
        self.limit_cents = limit_cents


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
]
