from __future__ import annotations

"""
Service wiring.

`Services` is built once at startup from the validated `Settings` and handed to
request handlers. Backends and issuers are created lazily so a dev instance
without credentials still boots; the first call that needs them raises
`NotConfigured`.
"""

import logging
from functools import cached_property
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vidgate.core.config import Settings
from vidgate.core.redis_client import RedisClient
from vidgate.repositories.videos import VideoStore
from vidgate.services.backends import VideoBackend, build_backend
from vidgate.services.grants import GrantIssuer, build_grant_issuer
from vidgate.services.playback import PlaybackService
from vidgate.services.rate_limit import RateLimiter
from vidgate.services.reaper import Reaper
from vidgate.services.reconciliation import Reconciler
from vidgate.services.transport import ChunkedTransport
from vidgate.services.upload_sessions import UploadSessionManager
from vidgate.utils.clock import Clock, Sleeper, real_sleep, utcnow

logger = logging.getLogger(__name__)


class Services:
    def __init__(
        self,
        settings: Settings,
        *,
        session_maker: async_sessionmaker[AsyncSession],
        redis: RedisClient,
        backend: Optional[VideoBackend] = None,
        issuer: Optional[GrantIssuer] = None,
        clock: Clock = utcnow,
        sleep: Sleeper = real_sleep,
    ) -> None:
        self.settings = settings
        self.store = VideoStore(session_maker)
        self.redis = redis
        self.clock = clock
        self.sleep = sleep
        self.rate_limiter = RateLimiter.from_settings(settings, redis, clock=clock)
        if backend is not None:
            self.__dict__["backend"] = backend
        if issuer is not None:
            self.__dict__["issuer"] = issuer

    @cached_property
    def backend(self) -> VideoBackend:
        return build_backend(self.settings)

    @cached_property
    def issuer(self) -> GrantIssuer:
        return build_grant_issuer(self.settings, clock=self.clock)

    @cached_property
    def uploads(self) -> UploadSessionManager:
        return UploadSessionManager(
            settings=self.settings,
            store=self.store,
            backend=self.backend,
            rate_limiter=self.rate_limiter,
            redis=self.redis,
            clock=self.clock,
            sleep=self.sleep,
        )

    @cached_property
    def transport(self) -> ChunkedTransport:
        return ChunkedTransport(
            settings=self.settings, store=self.store, backend=self.backend, clock=self.clock, sleep=self.sleep
        )

    @cached_property
    def reconciler(self) -> Reconciler:
        return Reconciler(
            settings=self.settings,
            store=self.store,
            backend=self.backend,
            transport=self.transport,
            clock=self.clock,
            sleep=self.sleep,
        )

    @cached_property
    def reaper(self) -> Reaper:
        return Reaper(settings=self.settings, store=self.store, backend=self.backend, clock=self.clock, sleep=self.sleep)

    @cached_property
    def playback(self) -> PlaybackService:
        return PlaybackService(
            settings=self.settings,
            store=self.store,
            issuer=self.issuer,
            backend=self.backend,
            rate_limiter=self.rate_limiter,
            reconciler=self.reconciler,
        )

    async def aclose(self) -> None:
        backend = self.__dict__.get("backend")
        close = getattr(backend, "aclose", None)
        if close is not None:
            await close()


__all__ = ["Services"]
