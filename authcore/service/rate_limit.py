from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter(Protocol):
    """Per-key admission control consulted before costly auth operations."""

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Return ``(allowed, remaining, reset_seconds)``."""
        ...


def _normalize_window(key: str, window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        return 60
    return window_seconds


class InMemoryRateLimiter:
    """Token bucket kept in process memory; suitable for a single worker."""

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._lock = asyncio.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        if limit <= 0:
            return (True, limit, 0)
        window_seconds = _normalize_window(key, window_seconds)
        now = utcnow()
        refill_rate = float(limit) / float(window_seconds)
        async with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        return (allowed, int(tokens), reset_seconds)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._buckets.pop(key, None)

    def prune(self, older_than: timedelta = timedelta(hours=1)) -> int:
        """Drop idle buckets; a dropped bucket starts full again."""
        cutoff = utcnow() - older_than
        stale = [key for key, (_, ts) in self._buckets.items() if ts < cutoff]
        for key in stale:
            self._buckets.pop(key, None)
        return len(stale)


class RedisRateLimiter:
    """Token bucket shared across processes through :class:`RedisCache`."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        if limit <= 0:
            return (True, limit, 0)
        window_seconds = _normalize_window(key, window_seconds)
        return await self.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=True, cost=cost
        )

    async def reset(self, key: str) -> None:
        await self.cache.reset_rate_limit(key)


def build_rate_limiter(cache: Optional[RedisCache]) -> RateLimiter:
    if cache is not None:
        return RedisRateLimiter(cache)
    return InMemoryRateLimiter()
