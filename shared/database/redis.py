"""
Redis Client
============

Async Redis client holding the rate-limit counters shared by every worker
of a queue.

Version: 0.1.0
"""

import time
from typing import Any

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.config import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client wrapper.

    Holds one connection pool per process.
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
                max_connections=20,
            )
            logger.info("redis_client_created", host=settings.redis.host)
        return cls._client

    @classmethod
    async def close(cls) -> None:
        if cls._client is not None:
            await cls._client.aclose()
            cls._client = None
            logger.info("redis_client_closed")

    @classmethod
    async def health_check(cls) -> dict[str, Any]:
        """
        Check Redis health.

        Returns:
            dict with status and latency
        """
        try:
            start = time.perf_counter()
            pong = await cls.get_client().ping()
            latency_ms = (time.perf_counter() - start) * 1000
            return {
                "status": "healthy" if pong else "unhealthy",
                "latency_ms": round(latency_ms, 2),
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    @classmethod
    async def check_rate_limit(
        cls,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> tuple[bool, int]:
        """
        Count one request against a fixed-window counter.

        Args:
            key: Rate limit key (e.g., "rate:queue:compose")
            max_requests: Requests allowed per window
            window_seconds: Window length in seconds

        Returns:
            Tuple of (allowed, remaining)
        """
        client = cls.get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            current, _ = await pipe.execute()

        return current <= max_requests, max(0, max_requests - current)
