"""
Standard error response builders for the CSR agent.

Provides consistent response formats for tool results and for the
messages that are allowed to cross a transport boundary.
"""

from typing import Optional
from .codes import ErrorCode
from .exceptions import CSRError


# Messages shown to callers. Internal diagnostics go to the log only.
GENERIC_FAILURE_MESSAGE = "Sorry, something went wrong while handling your request. Please try again."
DEGRADED_MESSAGE = "Our assistant is temporarily unavailable. Please try again in a few moments."
TIMEOUT_MESSAGE = "The assistant is taking longer than expected. Please try again."
EMPTY_RESPONSE_MESSAGE = "I could not generate a response."


def error_response(error: CSRError | Exception, tool: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        tool: Optional tool name for context
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import ValidationError, error_response
        >>> err = ValidationError("Missing parameter", parameter="orderId")
        >>> error_response(err, tool="lookupOrder")
        {
            "success": False,
            "error": {
                "code": "VALIDATION_MISSING_PARAM",
                "message": "Missing parameter",
                "details": None,
                "tool": "lookupOrder",
                "recoverable": True,
                "context": {"parameter": "orderId"}
            }
        }
    """
    if isinstance(error, CSRError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "tool": tool,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Fallback for foreign exceptions
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": str(error) or type(error).__name__,
            "details": None,
            "tool": tool,
            "recoverable": False,
            "context": None,
        },
    }


def format_error_for_llm(error: CSRError | Exception, tool: Optional[str] = None) -> str:
    """Format an error for inclusion in LLM context.

    Creates a concise, readable error summary the model can use to
    apologize, retry with different arguments, or escalate.
    """
    prefix = f"{tool} failed. " if tool else ""
    if isinstance(error, CSRError):
        parts = [f"{prefix}Error: {error.message}"]
        if error.details:
            parts.append(f"Details: {error.details}")
        if error.recoverable:
            parts.append("This error may be recoverable with different input.")
        return " ".join(parts)

    return f"{prefix}Error: {str(error) or type(error).__name__}"


def public_message(error: CSRError | Exception) -> str:
    """Pick the safe, user-visible message for an error.

    Never returns raw exception text.
    """
    if isinstance(error, CSRError):
        if error.code == ErrorCode.LLM_TIMEOUT:
            return TIMEOUT_MESSAGE
        if error.code in (ErrorCode.LLM_CIRCUIT_OPEN, ErrorCode.LLM_UNAVAILABLE):
            return DEGRADED_MESSAGE
    return GENERIC_FAILURE_MESSAGE
