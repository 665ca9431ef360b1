"""
Error codes for the CSR agent.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for the CSR agent.

    Categories:
    - VALIDATION_*: Input validation errors
    - NOT_FOUND_*: Resource not found errors
    - LLM_*: Language model errors
    - TOOL_*: Tool execution errors
    - EXTERNAL_*: External service errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_TYPE = "VALIDATION_INVALID_TYPE"
    VALIDATION_OUT_OF_RANGE = "VALIDATION_OUT_OF_RANGE"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"

    # Not found errors (missing resources)
    NOT_FOUND_TOOL = "NOT_FOUND_TOOL"
    NOT_FOUND_AGENT = "NOT_FOUND_AGENT"
    NOT_FOUND_APPROVAL = "NOT_FOUND_APPROVAL"
    NOT_FOUND_SESSION = "NOT_FOUND_SESSION"

    # LLM errors (model interactions)
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_CIRCUIT_OPEN = "LLM_CIRCUIT_OPEN"
    LLM_RESPONSE_INVALID = "LLM_RESPONSE_INVALID"

    # Tool errors (agent tool execution)
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"

    # External service errors
    EXTERNAL_KNOWLEDGE_BACKEND_FAILED = "EXTERNAL_KNOWLEDGE_BACKEND_FAILED"
    EXTERNAL_NETWORK_ERROR = "EXTERNAL_NETWORK_ERROR"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
    INTERNAL_STATE_ERROR = "INTERNAL_STATE_ERROR"
