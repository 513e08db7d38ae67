"""
Redis Configuration

Async Redis counter store backing the invite rate limiter.

The client is constructed explicitly and handed to the rate limiter at
startup; the application lifespan owns ``connect()`` and ``close()``.
"""

import logging

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from app.core.exceptions import DependencyError
from app.core.rate_limit import CounterStore

logger = logging.getLogger(__name__)


class RedisCounterStore(CounterStore):
    """
    Fixed window counters in Redis.

    ``increment`` runs INCR and EXPIRE NX in a single MULTI/EXEC pipeline, so
    the count and the window expiry are set atomically and a later increment
    never pushes the window back.
    """

    def __init__(self, url: str, client: Redis | None = None):
        self.url = url
        self._client = client

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise DependencyError("redis")
        return self._client

    async def connect(self) -> None:
        """Open the connection and check it responds. Call on application startup."""
        client = from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except RedisError as e:
            await client.aclose()
            raise DependencyError("redis") from e
        self._client = client
        logger.info("Redis counter store connected")

    async def close(self) -> None:
        """Close the connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_available(self) -> bool:
        return self._client is not None

    async def increment(self, key: str, window_seconds: int) -> int:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            results = await pipe.execute()
        except RedisError as e:
            raise DependencyError("redis") from e
        return int(results[0])

    async def get(self, key: str) -> int:
        try:
            value = await self.client.get(key)
        except RedisError as e:
            raise DependencyError("redis") from e
        return int(value) if value is not None else 0

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise DependencyError("redis") from e

    async def ttl(self, key: str) -> int | None:
        try:
            remaining = await self.client.ttl(key)
        except RedisError as e:
            raise DependencyError("redis") from e
        # -2: missing key, -1: no expiry
        return remaining if remaining >= 0 else None
