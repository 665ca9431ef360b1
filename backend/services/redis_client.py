"""
Redis Connection Manager - shared counters and the ticket notification queue.

Provides:
- Async connection with health checks and reconnection
- Graceful fallback to in-memory when Redis is unreachable
- Counter ops for rate limiting, list ops for work queues

Usage:
    from services.redis_client import get_redis

    redis = await get_redis()
    await redis.rpush("csr:queue:tickets", payload)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class RedisManager:
    """
    Redis connection manager with fallback support.

    When Redis is disabled or unreachable, counters and lists live in
    process memory so callers never need a second code path.
    """

    url: str = "redis://localhost:6379/0"
    enabled: bool = True

    # Fallback list cap per key
    _fallback_max_list: int = 1000

    # Connection state
    _client: Any = field(default=None, repr=False)
    _available: bool = field(default=False, repr=False)
    _fallback_mode: bool = field(default=False, repr=False)
    _local_values: Dict[str, Any] = field(default_factory=dict, repr=False)
    _local_ttl: Dict[str, float] = field(default_factory=dict, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _initialized: bool = field(default=False, repr=False)

    @property
    def available(self) -> bool:
        """Check if Redis is available."""
        return self._available and not self._fallback_mode

    @property
    def fallback_mode(self) -> bool:
        """Check if operating in fallback mode."""
        return self._fallback_mode

    async def connect(self) -> bool:
        """
        Establish Redis connection.

        Returns:
            True if connected, False if fallback mode activated
        """
        if not self.enabled:
            logger.info("Redis disabled by config, using fallback mode")
            self._fallback_mode = True
            self._initialized = True
            return False

        async with self._lock:
            if self._initialized and self._available:
                return True

            try:
                self._client = redis_async.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5.0,
                    socket_timeout=5.0,
                )
                await self._client.ping()
                self._available = True
                self._fallback_mode = False
                self._initialized = True
                logger.info(f"Redis connected: {self.url}")
                return True
            except (RedisError, OSError) as e:
                logger.warning(f"Redis connection failed: {e}, using fallback mode")
                self._fallback_mode = True
                self._available = False
                self._initialized = True
                return False

    async def disconnect(self) -> None:
        """Close Redis connection."""
        async with self._lock:
            if self._client:
                try:
                    await self._client.aclose()
                except (RedisError, OSError) as e:
                    logger.warning(f"Error closing Redis: {e}")
                finally:
                    self._client = None
                    self._available = False

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis health status.

        Returns:
            Dict with status, mode, and latency info
        """
        if self._fallback_mode:
            return {"status": "fallback", "mode": "in-memory", "keys": len(self._local_values)}

        if not self._client:
            return {"status": "disconnected", "mode": "none"}

        try:
            start = time.monotonic()
            await self._client.ping()
            latency_ms = (time.monotonic() - start) * 1000
            return {"status": "connected", "mode": "redis", "latency_ms": round(latency_ms, 2)}
        except (RedisError, OSError) as e:
            self._enter_fallback()
            logger.warning(f"Redis health check failed: {e}, switching to fallback")
            return {"status": "error", "mode": "fallback", "error": str(e)}

    # === Counter Operations (rate limiting) ===

    async def incr(self, key: str) -> int:
        """Increment a counter."""
        if self._fallback_mode:
            return self._fallback_incr(key)

        try:
            return await self._client.incr(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis INCR failed for {key}: {e}")
            self._enter_fallback()
            return self._fallback_incr(key)

    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL on a key."""
        if self._fallback_mode:
            if key in self._local_values:
                self._local_ttl[key] = time.time() + ttl
            return True

        try:
            await self._client.expire(key, ttl)
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis EXPIRE failed for {key}: {e}")
            return False

    async def get_ttl(self, key: str) -> int:
        """Get remaining TTL for a key."""
        if self._fallback_mode:
            expiry = self._local_ttl.get(key)
            return max(0, int(expiry - time.time())) if expiry else -1

        try:
            return await self._client.ttl(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis TTL failed for {key}: {e}")
            return -1

    # === List Operations (work queues) ===

    async def rpush(self, key: str, value: str) -> int:
        """Append a value to a list, returning the new length."""
        if self._fallback_mode:
            return self._fallback_rpush(key, value)

        try:
            return await self._client.rpush(key, value)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis RPUSH failed for {key}: {e}")
            self._enter_fallback()
            return self._fallback_rpush(key, value)

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Read a slice of a list (inclusive end, like Redis)."""
        if self._fallback_mode:
            items = self._local_values.get(key, [])
            stop = None if end == -1 else end + 1
            return list(items[start:stop])

        try:
            return await self._client.lrange(key, start, end)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis LRANGE failed for {key}: {e}")
            return []

    # === Internal ===

    def _expired(self, key: str) -> bool:
        expiry = self._local_ttl.get(key)
        if expiry is not None and time.time() > expiry:
            self._local_values.pop(key, None)
            self._local_ttl.pop(key, None)
            return True
        return False

    def _fallback_incr(self, key: str) -> int:
        self._expired(key)
        current = int(self._local_values.get(key, 0)) + 1
        self._local_values[key] = current
        return current

    def _fallback_rpush(self, key: str, value: str) -> int:
        items = self._local_values.setdefault(key, [])
        items.append(value)
        if len(items) > self._fallback_max_list:
            del items[: len(items) - self._fallback_max_list]
        return len(items)

    def _enter_fallback(self) -> None:
        """Switch to fallback mode."""
        if not self._fallback_mode:
            logger.warning("Redis unavailable, switching to fallback mode")
            self._fallback_mode = True
            self._available = False

    async def try_reconnect(self) -> bool:
        """Attempt to reconnect to Redis."""
        if not self._fallback_mode:
            return True

        logger.info("Attempting Redis reconnection...")
        self._fallback_mode = False
        self._initialized = False
        return await self.connect()


# Singleton instance
_redis_manager: Optional[RedisManager] = None
_init_lock = asyncio.Lock()


async def get_redis() -> RedisManager:
    """
    Get the Redis manager singleton.

    Lazily initializes connection on first call.
    """
    global _redis_manager

    if _redis_manager is None:
        async with _init_lock:
            if _redis_manager is None:
                from config import runtime_config

                _redis_manager = RedisManager(
                    url=runtime_config.redis_url,
                    enabled=runtime_config.redis_enabled,
                )
                await _redis_manager.connect()

    return _redis_manager


async def close_redis() -> None:
    """Close the Redis connection (call on shutdown)."""
    global _redis_manager
    if _redis_manager:
        await _redis_manager.disconnect()
        _redis_manager = None
