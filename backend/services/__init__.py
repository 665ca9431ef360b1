"""
CSR Services - Shared infrastructure and business services.

- llm_client: OpenAI SDK wrapper for chat and embeddings
- redis_client: Redis connection manager with health checks and fallback
- orders, inventory, refunds, tickets: seeded business services behind the tools
"""

from .redis_client import RedisManager, get_redis

__all__ = ["RedisManager", "get_redis"]
