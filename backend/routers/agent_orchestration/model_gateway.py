"""
CSR Model Gateway - the only path from the agent loop to the LLM

Wraps the synchronous LLM client with:
1. Circuit breaker check (fail fast while open)
2. Shared per-minute rate limiter
3. Executor call bounded by asyncio.wait_for
4. Bounded retry with exponential backoff for transient errors only

Every failure that leaves this module is an LLMError.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from errors import LLMError
from logging_config import log_llm

from .resilience import CircuitBreaker, RateLimiter, is_retryable_error

logger = logging.getLogger(__name__)


class ModelGateway:
    def __init__(
        self,
        client,
        model: str,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        timeout: float = 60.0,
        retry_max: int = 2,
        retry_delay: float = 1.0,
    ):
        """
        Args:
            client: Object with chat(model=, messages=, tools=, options=) -> {"message": {...}}
            model: Chat model name
            rate_limiter: Shared limiter (60/min when None)
            circuit_breaker: Shared breaker (5 failures / 30s when None)
            timeout: Seconds per attempt
            retry_max: Retries after the first attempt
            retry_delay: Base backoff delay in seconds
        """
        self.client = client
        self.model = model
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.timeout = timeout
        self.retry_max = retry_max
        self.retry_delay = retry_delay

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call the model with the protective layer applied.

        Raises:
            LLMError: circuit open, timeout, non-retryable error or retries exhausted
        """
        if self.circuit_breaker.is_open():
            raise LLMError(
                message="LLM service temporarily unavailable (circuit breaker open)",
                error_type="circuit_open",
                model=self.model,
            )

        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_max + 1):
            if attempt > 0:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.info(f"Retry {attempt}/{self.retry_max} for {self.model} after {delay:.1f}s")
                await asyncio.sleep(delay)

            await self.rate_limiter.acquire()

            start_time = time.time()
            log_llm(logger, "start", model=self.model, attempt=attempt + 1)

            try:
                response = await asyncio.wait_for(
                    loop.run_in_executor(
                        None,
                        lambda: self.client.chat(model=self.model, messages=messages, tools=tools, options=options),
                    ),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                duration = time.time() - start_time
                logger.warning(f"LLM call timed out after {duration:.2f}s (limit={self.timeout}s, model={self.model})")
                self.circuit_breaker.record_failure()
                raise LLMError(
                    message=f"Model response timed out after {self.timeout}s",
                    error_type="timeout",
                    model=self.model,
                ) from None
            except Exception as e:
                last_error = e
                self.circuit_breaker.record_failure()
                if is_retryable_error(e) and attempt < self.retry_max and not self.circuit_breaker.is_open():
                    logger.warning(f"Retryable error on {self.model}: {e}")
                    continue
                raise LLMError(
                    message="Model call failed",
                    details=str(e),
                    error_type="unavailable",
                    model=self.model,
                    attempts=attempt + 1,
                ) from e

            log_llm(logger, "end", model=self.model, attempt=attempt + 1, duration=time.time() - start_time)

            if not isinstance(response, dict) or not isinstance(response.get("message"), dict):
                self.circuit_breaker.record_failure()
                raise LLMError(
                    message="Model returned an unexpected response shape",
                    error_type="invalid",
                    model=self.model,
                )

            self.circuit_breaker.record_success()
            return response

        # Loop always returns or raises; kept for type checkers
        raise LLMError(message="Model call failed", details=str(last_error), model=self.model)

    def health(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "circuit": self.circuit_breaker.state,
            "failures": self.circuit_breaker.failures,
            "callsInWindow": self.rate_limiter.in_window,
        }
