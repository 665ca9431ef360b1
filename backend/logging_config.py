"""
CSR Agent Logging Configuration

Provides:
- ColorFormatter: ANSI color-coded console output for development
- JsonFormatter: one JSON object per line for log collectors
- Event helpers: log_message_in, log_message_out, log_tool, log_llm, log_approval
- setup_logging(): configure the root logger from LOG_LEVEL / LOG_FORMAT

Usage:
    from logging_config import setup_logging, log_tool
    setup_logging()
    logger = logging.getLogger(__name__)
    log_tool(logger, "lookupOrder", "start", orderId="ORD-12345")
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Iterable, Optional

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    "MSG_IN": "\033[96m",  # Cyan - customer message
    "MSG_OUT": "\033[92m",  # Green - agent reply
    "APPROVAL": "\033[95m",  # Magenta - human approval
    "TOOL": "\033[93m",  # Yellow - tool calls
    "LLM": "\033[94m",  # Blue - model gateway
    "ERROR": "\033[91m",
    "WARN": "\033[33m",
    "DEBUG": "\033[90m",
}

# Third-party loggers that drown out agent events at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "qdrant_client", "uvicorn.access")


class ColorFormatter(logging.Formatter):
    """Compact colored lines: time [LEVL] logger: message."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"])
        timestamp = self.formatTime(record, "%H:%M:%S")
        source = record.name.rsplit(".", 1)[-1]

        formatted = (
            f"{COLORS['DIM']}{timestamp}{COLORS['RESET']} "
            f"[{color}{record.levelname[:4]}{COLORS['RESET']}] "
            f"{COLORS['DIM']}{source}:{COLORS['RESET']} {record.getMessage()}"
        )
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


class JsonFormatter(logging.Formatter):
    """Structured output. Color codes are stripped from helper messages."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        for code in COLORS.values():
            message = message.replace(code, "")

        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger.

    Args:
        level: Level name; defaults to LOG_LEVEL or INFO
        fmt: 'color' or 'json'; defaults to LOG_FORMAT or color
    """
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    fmt = (fmt or os.environ.get("LOG_FORMAT") or "color").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt == "json" else ColorFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# AGENT EVENT HELPERS
# =============================================================================


def _kv(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items() if v is not None)


def log_message_in(logger: logging.Logger, message: str, session_id: str, **context) -> None:
    """Log an incoming customer message (truncated preview)."""
    preview = message[:80] + "..." if len(message) > 80 else message
    logger.info(
        f"{COLORS['MSG_IN']}>>> MESSAGE{COLORS['RESET']} {preview!r} session={session_id} {_kv(context)}".rstrip(),
        extra={"event": "message_in"},
    )


def log_message_out(
    logger: logging.Logger,
    execution_id: str,
    tools_used: Optional[Iterable[str]] = None,
    sources: int = 0,
    status: str = "completed",
    duration_ms: Optional[int] = None,
) -> None:
    """Log the outcome of one agent execution.

    Args:
        logger: Logger instance
        execution_id: Execution id returned to the client
        tools_used: Tool names invoked during the run
        sources: Number of knowledge sources cited
        status: Final execution status
        duration_ms: Wall time of the run
    """
    tools = ",".join(tools_used) if tools_used else "none"
    logger.info(
        f"{COLORS['MSG_OUT']}<<< RESPONSE{COLORS['RESET']} {execution_id} "
        f"{_kv({'status': status, 'tools': tools, 'sources': sources, 'ms': duration_ms})}",
        extra={"event": "message_out"},
    )


def log_tool(
    logger: logging.Logger,
    tool_name: str,
    state: str,
    duration_ms: Optional[float] = None,
    **context,
) -> None:
    """Log a tool invocation ('start') or its outcome ('end')."""
    arrow = ">>>" if state == "start" else "<<<"
    if duration_ms is not None:
        context["ms"] = round(duration_ms)
    logger.info(
        f"{COLORS['TOOL']}{arrow} TOOL{COLORS['RESET']} {tool_name} {_kv(context)}".rstrip(),
        extra={"event": f"tool_{state}"},
    )


def log_llm(
    logger: logging.Logger,
    state: str,
    model: str = "",
    attempt: int = 1,
    duration: float = 0,
) -> None:
    """Log a model gateway call.

    Args:
        logger: Logger instance
        state: 'start' or 'end'
        model: Model name
        attempt: 1-based attempt number within the retry budget
        duration: Call duration in seconds (end state)
    """
    if state == "start":
        msg = f"{COLORS['LLM']}>>> LLM{COLORS['RESET']} calling {model} attempt={attempt}"
    else:
        msg = f"{COLORS['LLM']}<<< LLM{COLORS['RESET']} {model} completed in {duration:.2f}s attempt={attempt}"
    logger.info(msg, extra={"event": f"llm_{state}"})


def log_approval(
    logger: logging.Logger,
    request_id: str,
    state: str,
    tool_name: str = "",
    by: str = "",
) -> None:
    """Log an approval lifecycle event: requested, approved, rejected or timed_out."""
    who = f" by={by}" if by else ""
    logger.info(
        f"{COLORS['APPROVAL']}=== APPROVAL{COLORS['RESET']} {request_id} {state} tool={tool_name}{who}",
        extra={"event": f"approval_{state}"},
    )
