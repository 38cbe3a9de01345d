from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

log = logging.getLogger(__name__)


class RedisManager:
    """Owns the shared Redis connection (state store, webhook stream, rate limiter)."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or ""
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        if not self.redis_url:
            return
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected")
        except Exception as e:
            log.warning("Redis connection failed: %s", e)
            self.redis_client = None

    async def close(self):
        if self.redis_client is None:
            return
        try:
            await self.redis_client.aclose()
        except Exception as e:
            log.debug("Redis close failed: %s", e)
        self.redis_client = None
