from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for fixed-window rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic fixed window: reset when the window has elapsed, refuse without
    # counting once the limit is reached, otherwise increment.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or (now - start) > window_ms then
  redis.call('HSET', key, 'count', 1, 'start', now)
  redis.call('PEXPIRE', key, window_ms * 2)
  return {1, 1, now}
end

if count >= limit then
  return {0, count, start}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {1, count, start}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-supplied components cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, float]:
        """Count one attempt; returns (allowed, count, window_start_epoch_seconds)."""

        safe_key = self._normalize_rate_key(key)
        allowed, count, start = await self._fixed_window(
            keys=[safe_key], args=[self._now_ms(), int(window_seconds * 1000), limit]
        )
        return bool(int(allowed)), int(count), int(start) / 1000.0

    async def get_fixed_window(self, key: str) -> Optional[Tuple[int, float]]:
        data = await self.client.hmget(self._normalize_rate_key(key), "count", "start")
        if not data or data[0] is None or data[1] is None:
            return None
        return int(data[0]), int(data[1]) / 1000.0

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, float]:
        safe_key = RedisCache._normalize_rate_key(key)
        allowed, count, start = self._fixed_window(
            keys=[safe_key],
            args=[RedisCache._now_ms(), int(window_seconds * 1000), limit],
        )
        return bool(int(allowed)), int(count), int(start) / 1000.0

    async def get_fixed_window(self, key: str) -> Optional[Tuple[int, float]]:
        data = self._sync_client.hmget(RedisCache._normalize_rate_key(key), "count", "start")
        if not data or data[0] is None or data[1] is None:
            return None
        return int(data[0]), int(data[1]) / 1000.0

    async def close(self) -> None:
        self._sync_client.close()
