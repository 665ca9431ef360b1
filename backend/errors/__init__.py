"""
CSR Agent Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        CSRError,
        ValidationError,
        NotFoundError,
        LLMError,
        ToolExecutionError,
        ExternalServiceError,
        ConfigurationError,

        # Response builders
        error_response,
        format_error_for_llm,
        public_message,

        # Decorators
        handle_async_tool_errors,
        log_error,
    )

Example:
    from errors import handle_async_tool_errors, ValidationError

    @handle_async_tool_errors("processRefund")
    async def process_refund(orderId: str, amount: float, reason: str):
        if amount <= 0:
            raise ValidationError(
                "Invalid refund amount",
                details="Amount must be positive",
                parameter="amount",
            )
        ...
"""

from .codes import ErrorCode
from .exceptions import (
    CSRError,
    ValidationError,
    NotFoundError,
    LLMError,
    ToolExecutionError,
    ExternalServiceError,
    ConfigurationError,
)
from .response import (
    DEGRADED_MESSAGE,
    EMPTY_RESPONSE_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    TIMEOUT_MESSAGE,
    error_response,
    format_error_for_llm,
    public_message,
)
from .handlers import (
    handle_async_tool_errors,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "CSRError",
    "ValidationError",
    "NotFoundError",
    "LLMError",
    "ToolExecutionError",
    "ExternalServiceError",
    "ConfigurationError",
    # Response builders
    "DEGRADED_MESSAGE",
    "EMPTY_RESPONSE_MESSAGE",
    "GENERIC_FAILURE_MESSAGE",
    "TIMEOUT_MESSAGE",
    "error_response",
    "format_error_for_llm",
    "public_message",
    # Decorators
    "handle_async_tool_errors",
    "log_error",
]
