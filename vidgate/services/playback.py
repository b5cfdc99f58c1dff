from __future__ import annotations

"""
Playback grants: rate limit → facts → decision → signed grant.

The access decision is recomputed for every request. A record still
processing gets one gated status re-check first so a viewer who opens the
page after transcoding finished is not told to wait.
"""

import logging
from typing import Optional

from vidgate.core.config import Settings
from vidgate.core.exceptions import AccessDenied, AppException, ErrorKind
from vidgate.db.models import VideoStatus
from vidgate.repositories.videos import VideoStore
from vidgate.services.access import RequestContext, decide_access, gather_facts
from vidgate.services.backends import VideoBackend
from vidgate.services.grants import GrantIssuer, SignedGrant
from vidgate.services.rate_limit import RateLimiter
from vidgate.services.reconciliation import Reconciler
from vidgate.services.validation import validate_artifact_id, validate_positive_id

logger = logging.getLogger(__name__)


class PlaybackService:
    def __init__(
        self,
        *,
        settings: Settings,
        store: VideoStore,
        issuer: GrantIssuer,
        backend: VideoBackend,
        rate_limiter: RateLimiter,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.reconciler = reconciler
        self.default_ttl = settings.PLAYBACK_TTL_SECONDS

    async def issue_grant(
        self,
        ctx: RequestContext,
        submission_id: int,
        *,
        artifact_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        response_content_disposition: Optional[str] = None,
    ) -> SignedGrant:
        validate_positive_id(submission_id, "submission_id")
        if artifact_id is not None:
            validate_artifact_id(artifact_id)
        user = ctx.current_user
        await self.rate_limiter.hit("playback", user)

        record = await self.store.get_record(submission_id)
        if record is not None and record.status in (VideoStatus.PENDING, VideoStatus.UPLOADING) and self.reconciler:
            try:
                record = await self.reconciler.refresh_status(submission_id)
            except AppException as e:
                if e.kind is not ErrorKind.TRANSIENT:
                    raise
                logger.warning("status re-check for submission %s failed: %s", submission_id, e.code)

        decision = decide_access(await gather_facts(ctx, record, claimed_artifact_id=artifact_id))
        if not decision.allowed:
            logger.info(
                "playback denied: user=%s submission=%s reason=%s",
                user.user_id, submission_id, decision.reason.value,
            )
            details = {"status": decision.status} if decision.status else None
            raise AccessDenied(reason=decision.reason.value, details=details)

        grant = self.issuer.issue_playback_grant(
            self.backend.resource_identity(record.artifact_id),
            ttl_seconds or self.default_ttl,
            response_content_disposition=response_content_disposition,
            viewer_id=str(user.user_id),
        )
        logger.info(
            "playback granted: user=%s submission=%s reason=%s exp=%s",
            user.user_id, submission_id, decision.reason.value, grant.expires_at,
        )
        return grant


__all__ = ["PlaybackService"]
