"""
Redis connection for alert de-duplication.

The client is bound to the event loop that created it. Celery tasks run each
pass in a fresh `asyncio.run`, so they close it alongside the database
engine when the pass ends.
"""

from typing import Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis

from paycore.config import settings

logger = logging.getLogger(__name__)


class RedisNotConfigured(RuntimeError):
    """REDIS_URL is empty; callers treat Redis-backed features as disabled."""


class RedisClient:
    """Process-wide async Redis client."""

    _client: Optional[Redis] = None

    @classmethod
    def get_client(cls) -> Redis:
        if not settings.redis_url:
            raise RedisNotConfigured("REDIS_URL not set")

        if cls._client is None:
            cls._client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                health_check_interval=30,
            )
            logger.info("Redis client initialized")

        return cls._client

    @classmethod
    async def close(cls):
        if cls._client:
            client, cls._client = cls._client, None
            await client.close()
            logger.info("Redis client closed")


async def get_redis() -> Redis:
    """Dependency for getting redis connection."""
    return RedisClient.get_client()
