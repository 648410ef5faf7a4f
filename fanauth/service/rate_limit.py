from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Optional, Union

from fanauth.logging import get_logger
from fanauth.service.errors import RateLimitedError
from fanauth.storage.models import utcnow
from fanauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60
_SWEEP_INTERVAL_SECONDS = 60


class RateLimiter:
    """Sliding-window attempt limiter keyed by action and subject.

    Only accepted attempts are recorded, so a key frees up as soon as its
    oldest accepted attempt leaves the trailing window. Uses Redis when a
    cache is configured, otherwise an in-process log that is only correct
    for a single worker.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or utcnow
        self._local_attempts: Dict[str, Deque[float]] = {}
        self._local_expiry: Dict[str, float] = {}
        self._last_sweep = 0.0
        self._local_lock = asyncio.Lock()

    async def check_limit(self, key: str, max_attempts: int, window_seconds: int) -> None:
        """Record one attempt for ``key`` or raise ``RateLimitedError``."""

        if max_attempts <= 0:
            return
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = _DEFAULT_WINDOW_SECONDS
        now = self._clock().timestamp()
        if self.cache:
            allowed, count, retry_after = await self.cache.check_rate_limit(
                key, max_attempts, window_seconds, now=now
            )
        else:
            allowed, count, retry_after = await self._check_local(
                key, max_attempts, window_seconds, now
            )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                attempts=count,
                limit=max_attempts,
                retry_after=retry_after,
            )
            raise RateLimitedError(detail={"retry_after": retry_after})

    async def _check_local(
        self, key: str, max_attempts: int, window_seconds: int, now: float
    ) -> tuple[bool, int, int]:
        cutoff = now - window_seconds
        async with self._local_lock:
            if now - self._last_sweep >= _SWEEP_INTERVAL_SECONDS:
                self._sweep_locked(now)
            attempts = self._local_attempts.setdefault(key, deque())
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if len(attempts) >= max_attempts:
                retry_after = max(1, int(attempts[0] + window_seconds - now + 0.999))
                return False, len(attempts), retry_after
            attempts.append(now)
            self._local_expiry[key] = now + window_seconds
            return True, len(attempts), 0

    def _sweep_locked(self, now: float) -> int:
        stale = [key for key, expires in self._local_expiry.items() if expires <= now]
        for key in stale:
            self._local_attempts.pop(key, None)
            self._local_expiry.pop(key, None)
        self._last_sweep = now
        return len(stale)

    async def cleanup_expired(self) -> int:
        """Drop in-process keys whose newest attempt has left its window.

        Runs on its own about once a minute from ``check_limit``; call it
        directly to reclaim memory sooner. Returns the number of keys removed.
        """
        async with self._local_lock:
            return self._sweep_locked(self._clock().timestamp())

    async def reset(self, key: str) -> None:
        if self.cache:
            await self.cache.reset_rate_limit(key)
            return
        async with self._local_lock:
            self._local_attempts.pop(key, None)
            self._local_expiry.pop(key, None)


__all__ = ["RateLimiter"]
