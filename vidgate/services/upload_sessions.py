from __future__ import annotations

"""
📤 Vidgate • Upload Session Manager
==================================

Hands out upload slots.

`create_session(ctx, assignment_id, file_size, mime_type, ...)`
---------------------------------------------------------------
1) Validate size / MIME / filename (`QuotaExceeded`, `InvalidUpload`).
2) Replay: same owner + idempotency key → the session that key created, in
   whatever state it is now (a key is bound to one session for good).
3) Capability check (owner must be able to submit) and hourly rate limit.
4) Pick the transport: ``file_size < DIRECT_UPLOAD_THRESHOLD_BYTES`` → direct,
   otherwise chunked.
5) Reserve the remote artifact + endpoint (retried on transient errors).
6) Persist the session with its deadline; if that fails the reservation is
   released again so nothing is orphaned remotely. An overlapping request
   that committed the same key first wins: our reservation is released and
   its session returned.

A reservation that is never completed is released later by the reaper.
"""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from redis.exceptions import RedisError

from vidgate.core.config import Settings
from vidgate.core.exceptions import AccessDenied, SessionNotFound
from vidgate.core.redis_client import RedisClient
from vidgate.db.models import SessionStatus, TransportKind, UploadSession
from vidgate.repositories.videos import VideoStore
from vidgate.services.access import RequestContext
from vidgate.services.backends import VideoBackend
from vidgate.services.rate_limit import RateLimiter
from vidgate.services.retry import RetryPolicy, retry_async
from vidgate.services.validation import (
    validate_file_size,
    validate_filename,
    validate_mime_type,
    validate_positive_id,
)
from vidgate.utils.clock import Clock, Sleeper, real_sleep, utcnow

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = 24 * 3600


def select_transport(file_size: int, threshold: int) -> TransportKind:
    return TransportKind.DIRECT if file_size < threshold else TransportKind.CHUNKED


def idempotency_key_for(owner_id: int, key: str) -> str:
    return f"idemp:upload:{owner_id}:{key}"


class UploadSessionManager:
    def __init__(
        self,
        *,
        settings: Settings,
        store: VideoStore,
        backend: VideoBackend,
        rate_limiter: RateLimiter,
        redis: Optional[RedisClient] = None,
        clock: Clock = utcnow,
        sleep: Sleeper = real_sleep,
    ) -> None:
        self.settings = settings
        self.store = store
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.redis = redis
        self._clock = clock
        self._sleep = sleep
        self._policy = RetryPolicy.from_settings(settings)

    # ─────────────────────────────────────────────────────────────
    # 🆕 Create
    # ─────────────────────────────────────────────────────────────
    async def create_session(
        self,
        ctx: RequestContext,
        assignment_id: int,
        file_size: int,
        mime_type: str,
        *,
        submission_id: int,
        filename: str,
        idempotency_key: Optional[str] = None,
    ) -> UploadSession:
        # ── [Step 1] Validate ─────────────────────────────────────────────
        validate_file_size(file_size, self.settings)
        mime = validate_mime_type(mime_type)
        name = validate_filename(filename)
        validate_positive_id(assignment_id, "assignment_id")
        validate_positive_id(submission_id, "submission_id")
        user = ctx.current_user

        # ── [Step 2] Idempotent replay ────────────────────────────────────
        if idempotency_key:
            existing = await self._replay(user.user_id, idempotency_key)
            if existing is not None:
                logger.info("replaying upload session %s for key %s", existing.id, idempotency_key)
                return existing

        # ── [Step 3] Capability + rate limit ──────────────────────────────
        if not await ctx.capability_oracle.can_submit(user, assignment_id):
            raise AccessDenied(reason="forbidden", details={"assignment_id": assignment_id})
        await self.rate_limiter.hit("upload", user)

        # ── [Step 4] Transport ────────────────────────────────────────────
        transport = select_transport(file_size, self.settings.DIRECT_UPLOAD_THRESHOLD_BYTES)

        # ── [Step 5] Reserve remotely ─────────────────────────────────────
        reservation = await retry_async(
            lambda: self.backend.reserve(filename=name, mime_type=mime, file_size=file_size, transport=transport),
            policy=self._policy,
            sleep=self._sleep,
            label="reserve upload",
        )

        # ── [Step 6] Persist ──────────────────────────────────────────────
        now = self._clock()
        upload = UploadSession(
            artifact_id=reservation.artifact_id,
            owner_id=user.user_id,
            assignment_id=assignment_id,
            submission_id=submission_id,
            idempotency_key=idempotency_key,
            filename=name,
            mime_type=mime,
            expected_size=file_size,
            transport_kind=transport,
            remote_upload_endpoint=reservation.upload_endpoint,
            remote_upload_id=reservation.remote_upload_id,
            remote_parts=[] if transport is TransportKind.CHUNKED else None,
            bytes_confirmed=0,
            status=SessionStatus.CREATED,
            created_at=now,
            updated_at=now,
            deadline=now + timedelta(seconds=self.settings.UPLOAD_SESSION_DEADLINE_SECONDS),
        )
        try:
            stored = await self.store.insert_session(upload)
        except Exception:
            logger.exception("could not persist upload session; releasing %s", reservation.artifact_id)
            await self._release_reservation(reservation.artifact_id)
            raise
        if stored is not upload:
            # An overlapping request with the same key committed first
            logger.info("idempotency key %s won by session %s; releasing %s", idempotency_key, stored.id, reservation.artifact_id)
            await self._release_reservation(reservation.artifact_id)
            return stored

        if idempotency_key:
            await self._remember(user.user_id, idempotency_key, upload.id)
        logger.info(
            "upload session %s created: owner=%s size=%s transport=%s",
            upload.id, user.user_id, file_size, transport.value,
        )
        return upload

    # ─────────────────────────────────────────────────────────────
    # 🔎 Lookup
    # ─────────────────────────────────────────────────────────────
    async def get_owned_session(self, ctx: RequestContext, session_id: UUID) -> UploadSession:
        """The session if the caller owns it (or is admin); otherwise `SessionNotFound`."""
        upload = await self.store.get_session(session_id)
        if upload is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        user = ctx.current_user
        if upload.owner_id != user.user_id and not await ctx.capability_oracle.is_admin(user):
            # Foreign sessions are indistinguishable from missing ones
            raise SessionNotFound(f"Upload session {session_id} not found")
        return upload

    def describe(self, upload: UploadSession) -> dict:
        return {
            "session_id": str(upload.id),
            "artifact_id": upload.artifact_id,
            "transport_kind": upload.transport_kind.value,
            "expected_size": upload.expected_size,
            "bytes_confirmed": upload.bytes_confirmed,
            "status": upload.status.value,
            "chunk_size": self.settings.CHUNK_SIZE_BYTES,
            "direct_upload": self.backend.describe_endpoint(upload),
        }

    # ── internals ───────────────────────────────────────────────────────────
    async def _replay(self, owner_id: int, key: str) -> Optional[UploadSession]:
        session_id: Optional[str] = None
        if self.redis is not None:
            try:
                snap = await self.redis.idempotency_get(idempotency_key_for(owner_id, key))
            except (RedisError, RuntimeError):
                logger.warning("idempotency cache unavailable; falling back to the database")
                snap = None
            if isinstance(snap, dict):
                session_id = snap.get("session_id")
        if session_id:
            upload = await self.store.get_session(UUID(session_id))
        else:
            upload = await self.store.find_session_by_idempotency(owner_id, key)
        if upload is None or upload.owner_id != owner_id:
            return None
        return upload

    async def _remember(self, owner_id: int, key: str, session_id: UUID) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.idempotency_set(
                idempotency_key_for(owner_id, key),
                {"session_id": str(session_id)},
                ttl_seconds=IDEMPOTENCY_TTL_SECONDS,
            )
        except (RedisError, RuntimeError):
            logger.warning("could not cache idempotency snapshot for session %s", session_id)

    async def _release_reservation(self, artifact_id: str) -> None:
        try:
            await self.backend.delete(artifact_id)
        except Exception:
            # The reaper cannot see an unpersisted reservation; log loudly
            logger.exception("failed to release remote reservation %s", artifact_id)


__all__ = ["UploadSessionManager", "select_transport", "idempotency_key_for"]
