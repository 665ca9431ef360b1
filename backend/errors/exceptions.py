"""
Custom exception hierarchy for the CSR agent.

All exceptions inherit from CSRError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the caller can retry/fix the issue
- context: Additional key-value pairs for debugging
"""

from typing import Any, Optional
from .codes import ErrorCode


class CSRError(Exception):
    """Base exception for all CSR agent errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ValidationError(CSRError):
    """Error during input validation (caller input or tool arguments)."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        # A type mismatch is reported separately from a missing value
        code = ErrorCode.VALIDATION_INVALID_TYPE if expected and received else None

        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, code=code, **ctx)


class NotFoundError(CSRError):
    """Error when a required resource is not found."""

    code = ErrorCode.NOT_FOUND_TOOL
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        # Set appropriate code based on resource type
        if resource_type == "agent":
            code = ErrorCode.NOT_FOUND_AGENT
        elif resource_type == "approval":
            code = ErrorCode.NOT_FOUND_APPROVAL
        elif resource_type == "session":
            code = ErrorCode.NOT_FOUND_SESSION
        else:
            code = ErrorCode.NOT_FOUND_TOOL

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class LLMError(CSRError):
    """Error during LLM interactions."""

    code = ErrorCode.LLM_UNAVAILABLE
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        # Set appropriate code based on error type
        if error_type == "timeout":
            code = ErrorCode.LLM_TIMEOUT
        elif error_type == "circuit_open":
            code = ErrorCode.LLM_CIRCUIT_OPEN
        elif error_type == "invalid":
            code = ErrorCode.LLM_RESPONSE_INVALID
        else:
            code = ErrorCode.LLM_UNAVAILABLE

        ctx = {**context}
        if model:
            ctx["model"] = model
        super().__init__(message, details, code=code, **ctx)


class ToolExecutionError(CSRError):
    """Error raised while running a registered tool."""

    code = ErrorCode.TOOL_EXECUTION_FAILED
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        tool: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        code = ErrorCode.TOOL_TIMEOUT if error_type == "timeout" else ErrorCode.TOOL_EXECUTION_FAILED

        ctx = {**context}
        if tool:
            ctx["tool"] = tool
        super().__init__(message, details, code=code, **ctx)


class ExternalServiceError(CSRError):
    """Error with external services (knowledge backends, network)."""

    code = ErrorCode.EXTERNAL_NETWORK_ERROR
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        if service in ("pinecone", "qdrant", "knowledge"):
            code = ErrorCode.EXTERNAL_KNOWLEDGE_BACKEND_FAILED
        else:
            code = ErrorCode.EXTERNAL_NETWORK_ERROR

        ctx = {**context}
        if service:
            ctx["service"] = service
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, code=code, **ctx)


class ConfigurationError(CSRError):
    """Bootstrap/composition error (duplicate tool, misconfigured registry)."""

    code = ErrorCode.INTERNAL_CONFIG_ERROR
    recoverable = False
