from __future__ import annotations

"""
🧹 Vidgate • Orphan reaper & scheduled maintenance
=================================================

Releases remote storage nobody will ever confirm, and keeps local records in
step with the backend.

What it does
------------
- `sweep()`              → stale sessions (open past their deadline, or failed)
                           are claimed, their remote artifact deleted and the
                           session marked ``deleted``
- `release_session()`    → same, for one session (client cancel / cleanup call)
- `sync_remote_state()`  → ``ready`` records whose artifact vanished remotely
                           become ``deleted``
- `expire_retained()`    → ``ready``/``error`` records older than the retention
                           window are remote-deleted and marked ``deleted``
- `remove_video()`       → explicit owner/admin removal
- `run_scheduled_cleanup()` → all three maintenance steps, summaries logged

Design goals
------------
- Safe to run concurrently with itself: a session is claimed with a
  compare-and-set before its artifact is touched, and a remote NotFound counts
  as already cleaned.
- Best-effort per item: one failing artifact never stops the batch; it is
  counted in `failed` and picked up again on the next tick.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from loguru import logger as log

from vidgate.core.config import Settings
from vidgate.core.exceptions import AccessDenied, AppException, ArtifactNotFound
from vidgate.db.models import (
    OPEN_SESSION_STATUSES,
    SessionStatus,
    UploadSession,
    VideoRecord,
    VideoStatus,
)
from vidgate.repositories.videos import VideoStore
from vidgate.services.access import RequestContext
from vidgate.services.backends import VideoBackend
from vidgate.services.reconciliation import DELETED_REMOTELY_MESSAGE
from vidgate.services.retry import RetryPolicy, retry_async
from vidgate.utils.clock import Clock, Sleeper, real_sleep, utcnow

logger = logging.getLogger(__name__)

ABANDONED_MESSAGE = "Upload abandoned before completion"
CANCELLED_MESSAGE = "Upload cancelled"
RETENTION_MESSAGE = "Deleted after retention period"

_REAPABLE_STATUSES = (*OPEN_SESSION_STATUSES, SessionStatus.FAILED)
_LIVE_RECORD_STATUSES = (VideoStatus.PENDING, VideoStatus.UPLOADING, VideoStatus.READY, VideoStatus.ERROR)


@dataclass
class SweepSummary:
    scanned: int = 0
    deleted: int = 0
    not_found: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Reaper:
    def __init__(
        self,
        *,
        settings: Settings,
        store: VideoStore,
        backend: VideoBackend,
        clock: Clock = utcnow,
        sleep: Sleeper = real_sleep,
    ) -> None:
        self.store = store
        self.backend = backend
        self._clock = clock
        self._sleep = sleep
        self._policy = RetryPolicy.from_settings(settings)
        self._batch = settings.REAPER_BATCH_SIZE
        self._retention_days = settings.RETENTION_DAYS

    # ─────────────────────────────────────────────────────────────
    # 🕰️ Stale sessions
    # ─────────────────────────────────────────────────────────────
    async def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        stale = await self.store.list_stale_sessions(
            now=self._clock(), limit=self._batch, statuses=_REAPABLE_STATUSES
        )
        for upload in stale:
            summary.scanned += 1
            await self._reap(upload, message=ABANDONED_MESSAGE, summary=summary)
        return summary

    async def release_session(self, session_id: UUID) -> Optional[UploadSession]:
        """
        Cleanup endpoint: release an unfinished session now. Already-cleaned and
        completed sessions are returned untouched; a missing one yields None.
        """
        upload = await self.store.get_session(session_id)
        if upload is None or upload.status in (SessionStatus.DELETED, SessionStatus.COMPLETED):
            return upload
        summary = SweepSummary(scanned=1)
        await self._reap(upload, message=CANCELLED_MESSAGE, summary=summary)
        if summary.failed:
            logger.warning("cleanup of session %s deferred to the reaper: %s", session_id, summary.errors)
        return await self.store.get_session(session_id)

    async def _reap(self, upload: UploadSession, *, message: str, summary: SweepSummary) -> None:
        """
        Steps
        -----
        1) Claim: open (``created`` or ``uploading``) → failed (CAS). Losing
           the claim to a confirm means the upload finished; leave it alone.
           Failed sessions are already claimed.
        2) Delete the remote artifact (NotFound is success).
        3) failed → deleted.
        """
        # ── [Step 1] Claim ─────────────────────────────────────────────────
        if upload.status is not SessionStatus.FAILED:
            claimed = await self.store.transition_session(
                upload.id,
                from_statuses=OPEN_SESSION_STATUSES,
                to_status=SessionStatus.FAILED,
                now=self._clock(),
                error_message=message,
            )
            if not claimed:
                fresh = await self.store.get_session(upload.id)
                if fresh is None or fresh.status is not SessionStatus.FAILED:
                    logger.info("session %s no longer reapable", upload.id)
                    return

        # ── [Step 2] Remote delete ─────────────────────────────────────────
        try:
            existed = await self._delete_remote(upload.artifact_id, session=upload)
        except AppException as e:
            summary.failed += 1
            summary.errors.append(f"{upload.id}: {e.code}")
            logger.warning("remote delete failed for session %s: %s", upload.id, e.code)
            return

        # ── [Step 3] Mark deleted ──────────────────────────────────────────
        await self.store.transition_session(
            upload.id,
            from_statuses=(SessionStatus.FAILED,),
            to_status=SessionStatus.DELETED,
            now=self._clock(),
        )
        if existed:
            summary.deleted += 1
        else:
            summary.not_found += 1

    # ─────────────────────────────────────────────────────────────
    # 🔄 Remote sync
    # ─────────────────────────────────────────────────────────────
    async def sync_remote_state(self) -> SweepSummary:
        summary = SweepSummary()
        for record in await self.store.list_records(statuses=(VideoStatus.READY,), limit=self._batch):
            summary.scanned += 1
            try:
                remote = await retry_async(
                    lambda: self.backend.fetch_status(record.artifact_id),
                    policy=self._policy,
                    sleep=self._sleep,
                    label=f"status {record.artifact_id}",
                )
            except AppException as e:
                summary.failed += 1
                summary.errors.append(f"{record.owner_submission_id}: {e.code}")
                continue
            if remote.state != "missing":
                continue
            now = self._clock()
            if await self.store.update_record_if(
                record.owner_submission_id,
                from_statuses=(VideoStatus.READY,),
                artifact_id=record.artifact_id,
                now=now,
                status=VideoStatus.DELETED,
                deleted_at=now,
                last_checked_at=now,
                error_message=DELETED_REMOTELY_MESSAGE,
            ):
                summary.not_found += 1
        return summary

    # ─────────────────────────────────────────────────────────────
    # 🗓️ Retention
    # ─────────────────────────────────────────────────────────────
    async def expire_retained(self) -> SweepSummary:
        summary = SweepSummary()
        if self._retention_days <= 0:
            return summary
        cutoff = self._clock() - timedelta(days=self._retention_days)
        records = await self.store.list_records(
            statuses=(VideoStatus.READY, VideoStatus.ERROR), created_before=cutoff, limit=self._batch
        )
        for record in records:
            summary.scanned += 1
            try:
                existed = await self._delete_remote(record.artifact_id)
            except AppException as e:
                summary.failed += 1
                summary.errors.append(f"{record.owner_submission_id}: {e.code}")
                continue
            now = self._clock()
            marked = await self.store.update_record_if(
                record.owner_submission_id,
                from_statuses=(VideoStatus.READY, VideoStatus.ERROR),
                artifact_id=record.artifact_id,
                now=now,
                status=VideoStatus.DELETED,
                deleted_at=now,
                error_message=RETENTION_MESSAGE,
            )
            if marked and existed:
                summary.deleted += 1
            elif marked:
                summary.not_found += 1
        return summary

    # ─────────────────────────────────────────────────────────────
    # 🗑️ Explicit removal
    # ─────────────────────────────────────────────────────────────
    async def remove_video(self, ctx: RequestContext, submission_id: int) -> VideoRecord:
        """Owner or admin only: hard delete remotely, soft delete locally."""
        record = await self.store.get_record(submission_id)
        if record is None:
            raise ArtifactNotFound(f"No video for submission {submission_id}")
        user = ctx.current_user
        if record.owner_id != user.user_id and not await ctx.capability_oracle.is_admin(user):
            raise AccessDenied(reason="forbidden", details={"submission_id": submission_id})
        if record.status is VideoStatus.DELETED:
            return record

        existed = await self._delete_remote(record.artifact_id)
        now = self._clock()
        await self.store.update_record_if(
            submission_id,
            from_statuses=_LIVE_RECORD_STATUSES,
            artifact_id=record.artifact_id,
            now=now,
            status=VideoStatus.DELETED,
            deleted_at=now,
        )
        logger.info(
            "video for submission %s removed by user %s (remote %s)",
            submission_id, user.user_id, "deleted" if existed else "already gone",
        )
        return await self.store.get_record(submission_id)

    # ─────────────────────────────────────────────────────────────
    # 🧭 Scheduled entrypoint
    # ─────────────────────────────────────────────────────────────
    async def run_scheduled_cleanup(self) -> Dict[str, Dict[str, Any]]:
        started_at = self._clock()
        results = {
            "stale_sessions": (await self.sweep()).as_dict(),
            "remote_sync": (await self.sync_remote_state()).as_dict(),
            "retention": (await self.expire_retained()).as_dict(),
        }
        log.bind(job="reaper").info(
            "scheduled cleanup finished in {:.2f}s: {}",
            (self._clock() - started_at).total_seconds(),
            {k: {n: v for n, v in r.items() if n != "errors"} for k, r in results.items()},
        )
        return results

    # ── internals ───────────────────────────────────────────────────────────
    async def _delete_remote(self, artifact_id: str, *, session: Optional[UploadSession] = None) -> bool:
        return await retry_async(
            lambda: self.backend.delete(artifact_id, session=session),
            policy=self._policy,
            sleep=self._sleep,
            label=f"delete {artifact_id}",
        )


__all__ = ["Reaper", "SweepSummary"]
