from __future__ import annotations

"""
✅ Vidgate • Confirmation & Reconciliation
=========================================

The only writer of `VideoRecord` besides the reaper.

`confirm_upload(session_id)`
----------------------------
1) Make sure the session is completed (finishing a fully confirmed one, or
   adopting an out-of-band direct upload the remote already holds).
2) Idempotent shortcut: the submission's record is already ``ready`` for this
   artifact → return it without touching the backend.
3) Poll the backend: one immediate check, then one re-check after each delay
   of the configured schedule, stopping at the first non-processing answer.
4) Upsert the record keyed by submission id:
      ready      → ready (+ file_size / duration)
      processing → uploading (re-polled later through `refresh_status`)
      error      → error (+ backend reason)
      missing    → deleted
   A record pointing at a different artifact is switched over and the old
   remote artifact is deleted afterwards (NotFound tolerated). A ``ready``
   record is only switched to a replacement that is ``ready`` as well; until
   then it keeps serving the old artifact, and a replacement the backend
   rejects is deleted instead.

Every write is a conditional update on the status the decision was based on;
a lost race re-reads and returns the winner's row.
"""

import logging
from datetime import timedelta
from typing import Any, Dict
from uuid import UUID

from vidgate.core.config import Settings
from vidgate.core.exceptions import (
    AppException,
    ArtifactNotFound,
    InvalidTransition,
    SessionExpired,
    SessionNotFound,
)
from vidgate.db.models import (
    OPEN_SESSION_STATUSES,
    SessionStatus,
    TransportKind,
    UploadSession,
    VideoRecord,
    VideoStatus,
    can_transition,
)
from vidgate.repositories.videos import VideoStore
from vidgate.services.backends import RemoteStatus, VideoBackend
from vidgate.services.retry import RetryPolicy, retry_async
from vidgate.services.transport import ChunkedTransport
from vidgate.utils.clock import Clock, Sleeper, as_utc, real_sleep, utcnow

logger = logging.getLogger(__name__)

DELETED_REMOTELY_MESSAGE = "Video deleted from storage backend"

_TARGET_STATUS = {
    "ready": VideoStatus.READY,
    "processing": VideoStatus.UPLOADING,
    "error": VideoStatus.ERROR,
    "missing": VideoStatus.DELETED,
}


class Reconciler:
    def __init__(
        self,
        *,
        settings: Settings,
        store: VideoStore,
        backend: VideoBackend,
        transport: ChunkedTransport,
        clock: Clock = utcnow,
        sleep: Sleeper = real_sleep,
    ) -> None:
        self.store = store
        self.backend = backend
        self.transport = transport
        self._clock = clock
        self._sleep = sleep
        self._policy = RetryPolicy.from_settings(settings)
        self._poll_delays = list(settings.CONFIRM_POLL_DELAYS_SECONDS)
        self._recheck_interval = timedelta(seconds=settings.CONFIRM_RECHECK_INTERVAL_SECONDS)

    # ─────────────────────────────────────────────────────────────
    # ✅ Confirm
    # ─────────────────────────────────────────────────────────────
    async def confirm_upload(self, session_id: UUID) -> VideoRecord:
        upload = await self.store.get_session(session_id)
        if upload is None:
            raise SessionNotFound(f"Upload session {session_id} not found")

        # ── [Step 1] Session must be completed ────────────────────────────
        if upload.is_open:
            upload = await self._complete_open_session(upload)
        elif upload.status is not SessionStatus.COMPLETED:
            record = await self.store.get_record(upload.submission_id)
            if record is not None and record.artifact_id == upload.artifact_id:
                return record
            raise SessionExpired(f"Upload session is {upload.status.value}")

        # ── [Step 2] Idempotent shortcut ──────────────────────────────────
        record = await self.store.get_record(upload.submission_id)
        if record is not None and record.artifact_id == upload.artifact_id and record.status is VideoStatus.READY:
            logger.debug("confirm %s: record already ready", session_id)
            return record

        # ── [Step 3] Poll ─────────────────────────────────────────────────
        remote = await self._poll(upload.artifact_id)

        # ── [Step 4] Upsert ───────────────────────────────────────────────
        return await self._apply(
            submission_id=upload.submission_id,
            owner_id=upload.owner_id,
            assignment_id=upload.assignment_id,
            artifact_id=upload.artifact_id,
            remote=remote,
        )

    # ─────────────────────────────────────────────────────────────
    # 🔄 Re-check (gated)
    # ─────────────────────────────────────────────────────────────
    async def refresh_status(self, submission_id: int) -> VideoRecord:
        """
        Re-poll a record still in `pending`/`uploading`, but only if the last
        check is older than the re-check interval. Everything else is returned
        untouched.
        """
        record = await self.store.get_record(submission_id)
        if record is None:
            raise ArtifactNotFound(f"No video for submission {submission_id}")
        if record.status not in (VideoStatus.PENDING, VideoStatus.UPLOADING):
            return record
        last = as_utc(record.last_checked_at)
        if last is not None and self._clock() - last < self._recheck_interval:
            return record
        remote = await retry_async(
            lambda: self.backend.fetch_status(record.artifact_id),
            policy=self._policy,
            sleep=self._sleep,
            label=f"status {record.artifact_id}",
        )
        return await self._apply(
            submission_id=record.owner_submission_id,
            owner_id=record.owner_id,
            assignment_id=record.assignment_id,
            artifact_id=record.artifact_id,
            remote=remote,
        )

    # ── internals ───────────────────────────────────────────────────────────
    async def _complete_open_session(self, upload: UploadSession) -> UploadSession:
        if upload.bytes_confirmed == upload.expected_size:
            return await self.transport.complete_session(upload.id)

        if upload.transport_kind is TransportKind.CHUNKED:
            upload = await self.transport.current_offset(upload.id)
            if upload.status is SessionStatus.COMPLETED:
                return upload
            raise InvalidTransition(
                "Upload is not complete",
                code="upload_incomplete",
                details={"bytes_confirmed": upload.bytes_confirmed, "expected_size": upload.expected_size},
            )

        # Direct upload sent straight to the remote endpoint by the client
        remote = await retry_async(
            lambda: self.backend.fetch_status(upload.artifact_id),
            policy=self._policy,
            sleep=self._sleep,
            label=f"status {upload.artifact_id}",
        )
        if remote.state == "missing" or not remote.received:
            raise InvalidTransition(
                "Upload has not reached the storage backend yet",
                code="upload_incomplete",
                details={"bytes_confirmed": upload.bytes_confirmed, "expected_size": upload.expected_size},
            )
        await self.store.advance_offset(
            upload.id, expected=upload.bytes_confirmed, new_offset=upload.expected_size, now=self._clock()
        )
        await self.store.transition_session(
            upload.id,
            from_statuses=OPEN_SESSION_STATUSES,
            to_status=SessionStatus.COMPLETED,
            now=self._clock(),
        )
        fresh = await self.store.get_session(upload.id)
        if fresh is None or fresh.status is not SessionStatus.COMPLETED:
            raise SessionExpired("Upload session was closed while confirming")
        return fresh

    async def _poll(self, artifact_id: str) -> RemoteStatus:
        async def fetch() -> RemoteStatus:
            return await retry_async(
                lambda: self.backend.fetch_status(artifact_id),
                policy=self._policy,
                sleep=self._sleep,
                label=f"status {artifact_id}",
            )

        remote = await fetch()
        for delay in self._poll_delays:
            if remote.state != "processing":
                break
            await self._sleep(delay)
            remote = await fetch()
        logger.info("confirm %s: remote state %s", artifact_id, remote.state)
        return remote

    def _values_for(self, remote: RemoteStatus) -> Dict[str, Any]:
        now = self._clock()
        target = _TARGET_STATUS[remote.state]
        values: Dict[str, Any] = {"status": target, "last_checked_at": now}
        if target is VideoStatus.READY:
            values.update(file_size=remote.file_size, duration=remote.duration, error_message=None)
        elif target is VideoStatus.ERROR:
            values.update(error_message=remote.error_message)
        elif target is VideoStatus.DELETED:
            values.update(deleted_at=now, error_message=DELETED_REMOTELY_MESSAGE)
        return values

    async def _apply(
        self,
        *,
        submission_id: int,
        owner_id: int,
        assignment_id: int,
        artifact_id: str,
        remote: RemoteStatus,
    ) -> VideoRecord:
        values = self._values_for(remote)
        target: VideoStatus = values["status"]
        now = values["last_checked_at"]

        record = await self.store.get_record(submission_id)
        if record is None:
            # One live record per artifact
            other = await self.store.get_live_record_by_artifact(artifact_id)
            if other is not None and other.owner_submission_id != submission_id:
                raise InvalidTransition(
                    "Artifact already belongs to another submission",
                    code="artifact_in_use",
                    details={"artifact_id": artifact_id},
                )
            created = VideoRecord(
                artifact_id=artifact_id,
                owner_submission_id=submission_id,
                owner_id=owner_id,
                assignment_id=assignment_id,
                created_at=now,
                updated_at=now,
                **values,
            )
            if await self.store.insert_record(created):
                logger.info("record for submission %s created as %s", submission_id, target.value)
                return created
            record = await self.store.get_record(submission_id)
            if record is None:  # pragma: no cover - insert lost to a row that vanished again
                raise InvalidTransition("Concurrent record update; retry", code="concurrent_update")

        if record.artifact_id != artifact_id:
            if record.status is VideoStatus.READY and target is not VideoStatus.READY:
                return await self._keep_playable(record, artifact_id=artifact_id, target=target)
            return await self._replace(record, artifact_id=artifact_id, values=values)

        if not can_transition(record.status, target):
            logger.info(
                "record %s stays %s (remote says %s)", submission_id, record.status.value, target.value
            )
            return record
        if not await self.store.update_record_if(
            submission_id, from_statuses=(record.status,), artifact_id=artifact_id, now=now, **values
        ):
            logger.info("record %s changed concurrently; returning current state", submission_id)
        return await self.store.get_record(submission_id)

    async def _replace(self, record: VideoRecord, *, artifact_id: str, values: Dict[str, Any]) -> VideoRecord:
        """Point the submission at a new artifact and release the old one remotely."""
        old_artifact = record.artifact_id
        fresh_values = {"file_size": None, "duration": None, "error_message": None, "deleted_at": None, **values}
        switched = await self.store.replace_record_artifact(
            record.owner_submission_id,
            old_artifact_id=old_artifact,
            new_artifact_id=artifact_id,
            from_statuses=(record.status,),
            now=values["last_checked_at"],
            **fresh_values,
        )
        if switched:
            logger.info(
                "submission %s replaced artifact %s with %s", record.owner_submission_id, old_artifact, artifact_id
            )
            await self._delete_artifact(old_artifact)
        else:
            logger.info("record %s changed concurrently; returning current state", record.owner_submission_id)
        return await self.store.get_record(record.owner_submission_id)

    async def _keep_playable(self, record: VideoRecord, *, artifact_id: str, target: VideoStatus) -> VideoRecord:
        """
        A ready record only moves to a replacement that is ready too. Until then
        the old artifact keeps serving; a rejected replacement is released.
        """
        logger.info(
            "submission %s keeps ready artifact %s; replacement %s is %s",
            record.owner_submission_id,
            record.artifact_id,
            artifact_id,
            target.value,
        )
        if target is VideoStatus.ERROR:
            await self._delete_artifact(artifact_id)
        return record

    async def _delete_artifact(self, artifact_id: str) -> None:
        try:
            deleted = await retry_async(
                lambda: self.backend.delete(artifact_id),
                policy=self._policy,
                sleep=self._sleep,
                label=f"delete {artifact_id}",
            )
        except AppException:
            # No record points at it any more; left as an orphan
            logger.exception("could not delete unused artifact %s", artifact_id)
            return
        if not deleted:
            logger.info("unused artifact %s was already gone", artifact_id)


__all__ = ["Reconciler", "DELETED_REMOTELY_MESSAGE"]
