"""
Redis Cache Service
===================

Redis caching layer for subscription reads with connection management,
cache operations, and invalidation utilities.

Every operation is best-effort: a Redis failure is logged and treated
as a cache miss, never surfaced to the caller.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from app.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        # Pre-warm: force a real connection so the first request
        # doesn't pay the handshake cost.
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheManager:
    """
    Redis cache manager with common operations.

    Key naming convention:
        cache:{module}:{resource}:{identifier}

    Subscription status is cached briefly (``SUBSCRIPTION_STATUS_CACHE_TTL``)
    and invalidated on every ledger transition.
    """

    TTL_SHORT = 30

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """Get a JSON value from cache, None on miss or error."""
        try:
            client = await get_redis()
            value = await client.get(key)

            if value is None:
                return None

            return json.loads(value)
        except Exception as e:
            logger.warning("Cache get error for key %s: %s", key, e)
            return None

    @staticmethod
    async def set(
        key: str,
        value: Any,
        ttl: int = TTL_SHORT,
    ) -> bool:
        """
        Set value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        try:
            client = await get_redis()
            serialized = json.dumps(value, default=str)
            await client.setex(key, ttl, serialized)
            return True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(*keys: str) -> int:
        """Delete keys from cache, returning how many existed."""
        try:
            client = await get_redis()
            return await client.delete(*keys)
        except Exception as e:
            logger.warning("Cache delete error for keys %s: %s", keys, e)
            return 0


# =============================================================================
# Cache Key Builders
# =============================================================================

class CacheKeys:
    """Cache key builders for consistent naming."""

    @staticmethod
    def subscription_status(user_id: str) -> str:
        """Summary returned by validate_subscription_status."""
        return f"cache:subscription:status:{user_id}"


# =============================================================================
# Cache Invalidation Helpers
# =============================================================================

class CacheInvalidator:
    """Helpers for invalidating related cache entries."""

    @staticmethod
    async def on_subscription_change(user_id: str) -> None:
        """Invalidate caches when a ledger record changes."""
        await CacheManager.delete(CacheKeys.subscription_status(user_id))
