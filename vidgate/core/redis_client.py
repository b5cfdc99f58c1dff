# vidgate/core/redis_client.py
from __future__ import annotations

"""
Vidgate — Redis Client (Async)
==============================
Shared counters and idempotency snapshots for the upload / playback services.

What this provides
------------------
• Connect with retries & backoff (tunables come from `Settings`)
• Pooled async client with health checks
• Fixed-window **counters** (atomic INCR + EXPIRE) for per-user rate limits
• **Idempotency** snapshots (JSON set/get) for upload-slot replays

Usage
-----
    redis = RedisClient.from_settings(settings)
    await redis.connect()
    count = await redis.incr_window("rl:upload:7:480000", window_seconds=3600)
    await redis.close()
"""

import asyncio
import json
import logging
import random
from typing import TYPE_CHECKING, Any, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from vidgate.core.config import Settings

logger = logging.getLogger("redis")

HEALTH_CHECK_INTERVAL = 30  # seconds
CLIENT_NAME = "vidgate-api"


# ─────────────────────────────────────────────────────────────────────────────
# Subset of redis.Redis the wrapper calls (the test mock satisfies it too)
# ─────────────────────────────────────────────────────────────────────────────
class _RedisProto(Protocol):
    async def ping(self) -> Any: ...
    async def set(self, name: str, value: Any, *, ex: Optional[int] = None) -> Any: ...
    async def get(self, name: str) -> Any: ...
    async def incr(self, name: str, amount: int = 1) -> Any: ...
    async def expire(self, name: str, time: int) -> Any: ...
    async def close(self) -> Any: ...


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────
class RedisClient:
    """
    Redis connection manager (asyncio).

    One instance per process, built in the app lifespan and handed to the
    services. Helpers raise `RuntimeError` when called before `connect()`;
    callers that must keep working during an outage catch `RedisError` /
    `RuntimeError` themselves (see `RateLimiter`).
    """

    def __init__(
        self,
        redis_url: str,
        *,
        max_retries: int = 5,
        base_delay: float = 0.3,
        socket_timeout: float = 3.0,
        max_connections: int = 64,
    ):
        self.redis_url = redis_url
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.socket_timeout = socket_timeout
        self.max_connections = max_connections
        self._client: Optional[_RedisProto] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RedisClient":
        return cls(
            settings.REDIS_URL,
            max_retries=settings.REDIS_CONNECT_MAX_RETRIES,
            base_delay=settings.REDIS_CONNECT_BASE_DELAY,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            max_connections=settings.REDIS_POOL_MAX_CONNECTIONS,
        )

    # ── lifecycle ────────────────────────────────────────────────────────────
    async def connect(self) -> None:
        """
        Establish a connection with retries.

        Steps
        -----
        - **[Step 1]** Reuse a healthy client when possible.
        - **[Step 2]** Attempt connection with backoff and jitter.
        """
        # ── [Step 1] Reuse an existing healthy client ───────────────────────
        if self._client:
            try:
                await self._client.ping()
                return
            except RedisError:
                self._client = None

        last_err: Optional[Exception] = None

        # ── [Step 2] Retry with backoff ─────────────────────────────────────
        for attempt in range(1, self.max_retries + 1):
            try:
                self._client = self._build_client()
                await self._client.ping()
                logger.info("✅ Connected to Redis")
                return
            except (RedisError, OSError) as e:
                last_err = e
                self._client = None
                delay = self._backoff(attempt)
                logger.warning(
                    "Redis connect attempt %s/%s failed: %r (retrying in %.2fs)",
                    attempt, self.max_retries, e, delay,
                )
                await asyncio.sleep(delay)

        logger.error("❌ Redis connection failed after %s attempts.", self.max_retries)
        raise RuntimeError("Redis connection failed") from last_err

    async def close(self) -> None:
        if not self._client:
            return
        try:
            await self._client.close()
            logger.info("🛑 Redis connection closed.")
        except RedisError as e:
            logger.warning("Error closing Redis connection: %s", e)
        finally:
            self._client = None

    async def is_connected(self) -> bool:
        """True if `PING` succeeds."""
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    def _require(self) -> _RedisProto:
        if not self._client:
            raise RuntimeError("Redis not connected")
        return self._client

    # ── counters ─────────────────────────────────────────────────────────────
    async def incr_window(self, key: str, *, window_seconds: int) -> int:
        """
        Increment a fixed-window counter and return the new count.

        The first hit in a window sets the TTL so the key disappears with its
        bucket. INCR is atomic, so concurrent handlers never lose a hit.
        """
        client = self._require()
        count = int(await client.incr(key))
        if count == 1:
            await client.expire(key, int(window_seconds))
        return count

    # ── idempotency snapshots ────────────────────────────────────────────────
    async def idempotency_set(self, key: str, value: Any, *, ttl_seconds: int = 86400) -> None:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        await self._require().set(key, payload, ex=ttl_seconds)

    async def idempotency_get(self, key: str) -> Optional[Any]:
        """Load a snapshot; bytes or str payloads, unparseable → None."""
        raw = await self._require().get(key)
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return json.loads(raw)
        except ValueError:
            return None

    # ── internals ───────────────────────────────────────────────────────────
    def _build_client(self) -> _RedisProto:
        return redis.Redis.from_url(
            self.redis_url.strip(),
            decode_responses=True,
            health_check_interval=HEALTH_CHECK_INTERVAL,
            socket_keepalive=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
            retry_on_timeout=True,
            max_connections=self.max_connections,
            client_name=CLIENT_NAME,
        )

    def _backoff(self, attempt: int) -> float:
        # exponential, capped at 3s, plus jitter
        return min(3.0, self.base_delay * (2 ** (attempt - 1))) + random.uniform(0, 0.25)


__all__ = ["RedisClient"]
