from __future__ import annotations

"""
Per-user hourly rate limits (upload slots, playback grants).

Counter key: ``rl:{operation}:{user_id}:{hour_bucket}`` where ``hour_bucket`` is
``epoch // 3600``. INCR is atomic, so concurrent handlers never double-count.
Admins are exempt. Redis outages fail open (logged) so a cache hiccup never
blocks uploads.
"""

import logging
from typing import Dict, Literal

from redis.exceptions import RedisError

from vidgate.core.config import Settings
from vidgate.core.exceptions import RateLimited
from vidgate.core.redis_client import RedisClient
from vidgate.services.access import Principal
from vidgate.utils.clock import Clock, epoch, utcnow

logger = logging.getLogger(__name__)

Operation = Literal["upload", "playback"]
WINDOW_SECONDS = 3600


class RateLimiter:
    def __init__(self, redis: RedisClient, limits: Dict[str, int], *, clock: Clock = utcnow) -> None:
        self._redis = redis
        self._limits = dict(limits)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, redis: RedisClient, *, clock: Clock = utcnow) -> "RateLimiter":
        return cls(
            redis,
            {
                "upload": settings.UPLOAD_RATE_LIMIT_PER_HOUR,
                "playback": settings.PLAYBACK_RATE_LIMIT_PER_HOUR,
            },
            clock=clock,
        )

    @staticmethod
    def key(operation: str, user_id: int, bucket: int) -> str:
        return f"rl:{operation}:{user_id}:{bucket}"

    async def hit(self, operation: Operation, user: Principal) -> int:
        """Count one request; raise `RateLimited` once the bucket is over its limit."""
        if user.is_admin:
            return 0
        now = epoch(self._clock())
        bucket = now // WINDOW_SECONDS
        try:
            count = await self._redis.incr_window(self.key(operation, user.user_id, bucket), window_seconds=WINDOW_SECONDS)
        except (RedisError, RuntimeError):
            logger.exception("rate limiter unavailable for %s (fail-open)", operation)
            return 0
        limit = self._limits[operation]
        if count > limit:
            retry_after = (bucket + 1) * WINDOW_SECONDS - now
            logger.info("rate limit hit: op=%s user=%s count=%s", operation, user.user_id, count)
            raise RateLimited(operation=operation, retry_after=retry_after)
        return count


__all__ = ["RateLimiter", "WINDOW_SECONDS"]
