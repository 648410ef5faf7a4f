from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for sliding-window rate limits."""

    # Atomic sliding log: prune, count, record only when under the limit
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  end
  return {0, count, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so emails and IPs never collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _script_args(
        limit: int, window_seconds: int, now: Optional[float]
    ) -> list:
        ts = time.time() if now is None else now
        return [ts, window_seconds, limit, f"{ts}:{uuid.uuid4().hex}"]

    @staticmethod
    def _parse_result(result) -> Tuple[bool, int, int]:
        allowed, count, retry_after = result
        return bool(int(allowed)), int(count), int(retry_after or 0)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int]:
        """Return ``(allowed, attempts_in_window, retry_after_seconds)``."""

        result = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=self._script_args(limit, window_seconds, now),
        )
        return self._parse_result(result)

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under ``asyncio.run`` per test, but exposes the same awaitable methods as
    RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int]:
        result = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=RedisCache._script_args(limit, window_seconds, now),
        )
        return RedisCache._parse_result(result)

    async def reset_rate_limit(self, key: str) -> None:
        self.client.delete(RedisCache._normalize_rate_key(key))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
