"""
Error handling helpers for the CSR agent.

Tool handlers report failure in-band: a decorated handler never raises, it
returns error_response(...) with success=False, which ToolRegistry.execute
turns into a failed step result the model can read.
"""

import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import CSRError
from .response import error_response

AsyncHandler = TypeVar("AsyncHandler", bound=Callable[..., Awaitable[dict]])


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error as "[context] CODE: message".

    Example:
        >>> log_error(logger, err, context="AgentLoop exec-1")
        # Logs: "[AgentLoop exec-1] LLM_TIMEOUT: Model response timed out after 60s"
    """
    message = f"{error.code.value}: {error.message}" if isinstance(error, CSRError) else str(error)
    if context:
        message = f"[{context}] {message}"
    logger.error(message, exc_info=include_traceback)


def handle_async_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Wrap an async tool handler so exceptions become an in-band error dict.

    Args:
        tool_name: Tool name recorded in the error response
        logger: Defaults to the "csr.<tool_name>" logger

    Example:
        >>> @handle_async_tool_errors("lookupOrder")
        ... async def lookup_order(orderId: str):
        ...     order = await orders.find_by_id(orderId)
        ...     return {"found": order is not None}
    """

    def decorator(func: AsyncHandler) -> AsyncHandler:
        log = logger or logging.getLogger(f"csr.{tool_name}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                log_error(log, e, context=tool_name)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator
