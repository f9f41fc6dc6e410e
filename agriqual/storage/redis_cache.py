from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Shared fixed-window counters for rate limiting across replicas."""

    # Atomic read-reset-increment of one window; start is returned as a string
    # because Lua numbers are truncated to integers in replies.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or (now - start) > window then
  count = 0
  start = now
end

count = count + 1
redis.call('HSET', key, 'count', count, 'start', tostring(start))
redis.call('EXPIRE', key, math.ceil(window) + 1)
return {count, tostring(start)}
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

        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash key components so delimiters inside emails cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def increment(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        count, start = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[repr(float(now)), window_seconds],
        )
        return int(count), float(start)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""

        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
