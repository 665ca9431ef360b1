"""
Rate Limiting Middleware - Redis-backed request throttling.

Provides rate limiting for:
- REST chat and ingest endpoints (per IP)
- WebSocket messages (per client)

Uses Redis INCR with EXPIRE for a fixed-window counter. When Redis is
unreachable the counters live in process memory (see RedisManager).

Usage:
    # REST middleware
    app.add_middleware(RateLimitMiddleware)

    # WebSocket (manual check)
    allowed, error = await check_ws_message_limit(client_id)
    if not allowed:
        await websocket.send_json({"event": "error", "data": {"message": error}})
"""

import logging
from enum import Enum
from typing import Optional, Tuple

from fastapi import Request, Response
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class RateLimitType(Enum):
    """Rate limit types with their Redis key patterns."""
    CHAT = "csr:rl:chat"              # Per IP
    WS_MESSAGE = "csr:rl:msg"         # Per WebSocket client


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Take first IP in chain (original client)
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def _default_limit(limit_type: RateLimitType) -> int:
    from config import runtime_config

    if limit_type == RateLimitType.WS_MESSAGE:
        return runtime_config.rate_limit_ws_msg
    return runtime_config.rate_limit_chat


async def check_rate_limit(
    limit_type: RateLimitType,
    identifier: str,
    limit: Optional[int] = None,
    window_seconds: int = 60,
) -> Tuple[bool, int, int]:
    """
    Check if request is within rate limit.

    Args:
        limit_type: Type of rate limit to check
        identifier: Unique identifier (IP, client id, etc.)
        limit: Max requests per window (uses config default if None)
        window_seconds: Time window in seconds

    Returns:
        Tuple of (allowed, current_count, limit)
    """
    from config import runtime_config
    from services.redis_client import get_redis

    if limit is None:
        limit = _default_limit(limit_type)

    # In production, deny requests when the counter store errors (fail-closed)
    fail_closed = runtime_config.csr_env == "production"

    try:
        redis = await get_redis()
        key = f"{limit_type.value}:{identifier}"

        count = await redis.incr(key)

        # Set TTL on first request in window
        if count == 1:
            await redis.expire(key, window_seconds)

        allowed = count <= limit

        if not allowed:
            logger.warning(
                f"Rate limit exceeded: {limit_type.name} for {identifier} "
                f"({count}/{limit} in {window_seconds}s)"
            )

        return (allowed, count, limit)

    except (RedisError, OSError) as e:
        if fail_closed:
            logger.error(f"Rate limit check failed (fail-closed): {e}")
            return (False, 0, limit)
        logger.warning(f"Rate limit check failed: {e}, allowing request")
        return (True, 0, limit)


async def get_reset_in(limit_type: RateLimitType, identifier: str) -> int:
    """Seconds until the current window for identifier resets."""
    from services.redis_client import get_redis

    try:
        redis = await get_redis()
        ttl = await redis.get_ttl(f"{limit_type.value}:{identifier}")
        return max(0, ttl)
    except (RedisError, OSError) as e:
        logger.warning(f"Failed to get rate limit info: {e}")
        return 0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware for REST endpoints.

    WebSocket rate limiting is handled separately in the WebSocket handler.
    """

    # Endpoints to rate limit: path -> (type, window_seconds)
    RATE_LIMITED_PATHS = {
        "/api/csr/chat": (RateLimitType.CHAT, 60),
        "/api/csr/ingest": (RateLimitType.CHAT, 60),
    }

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request with rate limiting."""
        path = request.url.path

        for limited_path, (limit_type, window) in self.RATE_LIMITED_PATHS.items():
            if path.startswith(limited_path):
                client_ip = _get_client_ip(request)
                allowed, count, limit = await check_rate_limit(limit_type, client_ip, window_seconds=window)

                if not allowed:
                    reset_in = await get_reset_in(limit_type, client_ip)
                    return JSONResponse(
                        status_code=429,
                        content={
                            "detail": "Rate limit exceeded",
                            "retry_after": reset_in,
                        },
                        headers={
                            "X-RateLimit-Limit": str(limit),
                            "X-RateLimit-Remaining": "0",
                            "Retry-After": str(reset_in),
                        },
                    )

                response = await call_next(request)
                response.headers["X-RateLimit-Limit"] = str(limit)
                response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
                return response

        return await call_next(request)


async def check_ws_message_limit(client_id: str) -> Tuple[bool, str]:
    """
    Check WebSocket message rate limit.

    Args:
        client_id: WebSocket client identifier

    Returns:
        Tuple of (allowed, error_message)
    """
    allowed, count, limit = await check_rate_limit(RateLimitType.WS_MESSAGE, client_id)

    if not allowed:
        reset_in = await get_reset_in(RateLimitType.WS_MESSAGE, client_id)
        return (
            False,
            f"Message rate limit exceeded ({count}/{limit}/min). "
            f"Try again in {reset_in} seconds.",
        )

    return (True, "")
