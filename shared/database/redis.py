"""
Redis Client
============

Async Redis client backing the stage work queues.

Version: 0.1.0
"""

import time
from typing import Any

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client wrapper.

    Provides connection management and health checks with queue backlog.
    """

    _client: Redis | None = None  # type: ignore[type-arg]

    @classmethod
    def get_client(cls) -> Redis:  # type: ignore[type-arg]
        """Get or create the async client."""
        if cls._client is None:
            cls._client = aioredis.from_url(
                settings.redis.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
            )
            logger.info("redis_client_created", host=settings.redis.host)
        return cls._client

    @classmethod
    async def close(cls) -> None:
        """Close the client and release all connections."""
        if cls._client is not None:
            await cls._client.aclose()
            cls._client = None
            logger.info("redis_client_closed")

    @classmethod
    async def health_check(cls, queue_keys: list[str] | None = None) -> dict[str, Any]:
        """
        Check Redis health.

        Args:
            queue_keys: list keys whose backlog is reported as ``queues``
        """
        try:
            start = time.perf_counter()
            client = cls.get_client()
            pong = await client.ping()
            latency_ms = (time.perf_counter() - start) * 1000

            health: dict[str, Any] = {
                "status": "healthy" if pong else "unhealthy",
                "latency_ms": round(latency_ms, 2),
            }
            if queue_keys:
                health["queues"] = {key: await client.llen(key) for key in queue_keys}
            return health
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }

