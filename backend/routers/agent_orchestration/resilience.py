"""
CSR Resilience - protective layer around language-model calls

- RateLimiter: sliding one-minute window shared by all sessions; callers
  wait for a free slot instead of failing
- CircuitBreaker: opens after consecutive failures, fails fast for a
  cool-down, then lets one trial request through (half-open)
- is_retryable_error: transient vs permanent classification
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Optional

import openai

logger = logging.getLogger(__name__)


_PERMANENT_ERROR_PATTERNS = [
    "model not found",
    "does not exist",
    "invalid model",
    "invalid api key",
    "context length",
]

_TRANSIENT_ERROR_PATTERNS = [
    "model is loading",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "timed out",
    "overloaded",
    "rate limit",
]

_RETRYABLE_OPENAI_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)

_PERMANENT_OPENAI_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
    openai.BadRequestError,
    openai.UnprocessableEntityError,
)


def is_retryable_error(error: Exception) -> bool:
    """Check if error is transient and worth retrying (not permanent failures)."""
    if isinstance(error, _PERMANENT_OPENAI_ERRORS):
        return False
    if isinstance(error, _RETRYABLE_OPENAI_ERRORS):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code >= 500

    error_str = str(error).lower()
    # Never retry permanent errors
    if any(p in error_str for p in _PERMANENT_ERROR_PATTERNS):
        return False
    # Retry known transient errors
    return any(p in error_str for p in _TRANSIENT_ERROR_PATTERNS)


class RateLimiter:
    """Sliding-window limiter: at most max_per_window acquisitions per window."""

    def __init__(self, max_per_window: int = 60, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_per_window = max_per_window
        self.window = window_seconds
        self._clock = clock
        self._calls: deque = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    async def acquire(self) -> float:
        """Wait for a free slot. Returns seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_per_window:
                    self._calls.append(now)
                    return waited
                delay = max(0.01, self.window - (now - self._calls[0]))
                logger.warning(f"LLM rate limit reached ({self.max_per_window}/min), waiting {delay:.1f}s")
                await asyncio.sleep(delay)
                waited += delay

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)


class CircuitBreaker:
    """Prevents cascading failures when the LLM service is down."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failures = 0
        self.threshold = failure_threshold
        self.timeout = recovery_timeout
        self.last_failure_time = 0.0
        self.state = "closed"  # closed, open, half_open
        self._clock = clock
        # Start time of the single half-open trial request; None when none is out
        self._trial_started: Optional[float] = None

    def is_open(self) -> bool:
        """False when a call may proceed. While half-open only one caller gets
        through; a trial request that never reports back frees its slot after the
        recovery timeout."""
        now = self._clock()
        if self.state == "open":
            if now - self.last_failure_time <= self.timeout:
                return True
            self.state = "half_open"
            logger.info("Circuit breaker HALF-OPEN, allowing trial request")
        elif self.state != "half_open":
            return False

        if self._trial_started is not None and now - self._trial_started <= self.timeout:
            return True
        self._trial_started = now
        return False

    def record_success(self) -> None:
        if self.state != "closed":
            logger.info("Circuit breaker CLOSED")
        self.failures = 0
        self.state = "closed"
        self._trial_started = None

    def record_failure(self) -> None:
        self._trial_started = None
        self.failures += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failures >= self.threshold:
            if self.state != "open":
                logger.error("Circuit breaker OPEN, LLM service unavailable")
            self.state = "open"

    def to_dict(self) -> dict:
        return {"state": self.state, "failures": self.failures, "threshold": self.threshold}
