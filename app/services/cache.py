"""
Redis Cache Service
===================

Redis connection management, key naming and invalidation helpers.
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
            max_connections=20,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
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

    All operations are best-effort: a Redis failure is logged and reported
    as a miss, never raised.

    Key naming convention:
        cache:{module}:{resource}:{identifier}
    """

    TTL_HOUR = 3600  # 1 hour
    TTL_WEEK = 86400 * 7  # 7 days

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """Get a JSON value from cache, or None on miss / error."""
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
    async def set(key: str, value: Any, ttl: int = TTL_HOUR) -> bool:
        """Store a JSON value with a TTL."""
        try:
            client = await get_redis()
            await client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        """Delete a key."""
        try:
            client = await get_redis()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning("Cache delete error for key %s: %s", key, e)
            return False

    @staticmethod
    async def exists(key: str) -> bool:
        """Check whether a key exists. Errors count as absent."""
        try:
            client = await get_redis()
            return await client.exists(key) > 0
        except Exception as e:
            logger.warning("Cache exists error for key %s: %s", key, e)
            return False


class CacheKeys:
    """Cache key builders."""

    @staticmethod
    def subscription(user_id: str) -> str:
        """User subscription cache key."""
        return f"cache:subscription:{user_id}"

    @staticmethod
    def subscription_status(user_id: str) -> str:
        """User subscription status cache key."""
        return f"cache:subscription:status:{user_id}"

    @staticmethod
    def stripe_event(event_id: str) -> str:
        """Marker for an already-processed Stripe webhook event."""
        return f"webhook:stripe:event:{event_id}"


class CacheInvalidator:
    """Invalidation hooks for state changes."""

    @staticmethod
    async def on_subscription_change(user_id: str) -> None:
        """Invalidate caches when subscription changes."""
        await CacheManager.delete(CacheKeys.subscription(user_id))
        await CacheManager.delete(CacheKeys.subscription_status(user_id))
