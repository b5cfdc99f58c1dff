from __future__ import annotations

"""
VideoStore — persistence for upload sessions and video records.

All reads and writes go through here. Concurrent handlers are made safe with
conditional updates (``UPDATE ... WHERE <expected state>``) instead of row
locks; each method reports whether its condition held so the caller can decide
what losing a race means (usually: re-read and return the winner's state).

Every method takes an explicit ``now`` where it writes a timestamp so the
services' injected clock is the only time source.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vidgate.db.models import (
    OPEN_SESSION_STATUSES,
    SessionStatus,
    UploadSession,
    VideoRecord,
    VideoStatus,
)
from vidgate.db.session import transactional_async_session

logger = logging.getLogger(__name__)


class VideoStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    def _tx(self):
        return transactional_async_session(self._session_maker)

    # ─────────────────────────────────────────────────────────────
    # 📤 Upload sessions
    # ─────────────────────────────────────────────────────────────
    async def add_session(self, upload: UploadSession) -> UploadSession:
        async with self._tx() as db:
            db.add(upload)
        return upload

    async def insert_session(self, upload: UploadSession) -> UploadSession:
        """
        Insert a new session. If another request already holds the owner's
        idempotency key, that session is returned instead (compare with
        identity to tell the two apart).
        """
        try:
            async with self._tx() as db:
                db.add(upload)
        except IntegrityError:
            if upload.idempotency_key is None:
                raise
            winner = await self.find_session_by_idempotency(upload.owner_id, upload.idempotency_key)
            if winner is None:
                raise
            logger.info("idempotency key of owner %s already bound to session %s", upload.owner_id, winner.id)
            return winner
        return upload

    async def get_session(self, session_id: UUID) -> Optional[UploadSession]:
        async with self._session_maker() as db:
            return await db.get(UploadSession, session_id)

    async def find_session_by_idempotency(self, owner_id: int, idempotency_key: str) -> Optional[UploadSession]:
        stmt = (
            select(UploadSession)
            .where(UploadSession.owner_id == owner_id, UploadSession.idempotency_key == idempotency_key)
            .order_by(UploadSession.created_at.desc())
            .limit(1)
        )
        async with self._session_maker() as db:
            return (await db.execute(stmt)).scalars().first()

    async def advance_offset(
        self,
        session_id: UUID,
        *,
        expected: int,
        new_offset: int,
        now: datetime,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set the confirmed offset.

        Succeeds only while the session is open and still at `expected`; the new
        offset must be ahead of it. The status moves to `uploading` on the way;
        `values` (e.g. the multipart part list) land in the same statement.
        """
        if new_offset < expected:
            return False
        stmt = (
            update(UploadSession)
            .where(
                UploadSession.id == session_id,
                UploadSession.bytes_confirmed == expected,
                UploadSession.status.in_(OPEN_SESSION_STATUSES),
                UploadSession.expected_size >= new_offset,
            )
            .values(bytes_confirmed=new_offset, status=SessionStatus.UPLOADING, updated_at=now, **values)
        )
        async with self._tx() as db:
            result = await db.execute(stmt)
        return result.rowcount == 1

    async def transition_session(
        self,
        session_id: UUID,
        *,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        now: datetime,
        **values: Any,
    ) -> bool:
        """Move a session to `to_status` only if it is currently in `from_statuses`."""
        stmt = (
            update(UploadSession)
            .where(UploadSession.id == session_id, UploadSession.status.in_(tuple(from_statuses)))
            .values(status=to_status, updated_at=now, **values)
        )
        async with self._tx() as db:
            result = await db.execute(stmt)
        return result.rowcount == 1

    async def list_stale_sessions(
        self,
        *,
        now: datetime,
        limit: int,
        statuses: Sequence[SessionStatus] = OPEN_SESSION_STATUSES,
    ) -> List[UploadSession]:
        """Sessions in `statuses` whose deadline has passed, oldest first."""
        stmt = (
            select(UploadSession)
            .where(UploadSession.status.in_(tuple(statuses)), UploadSession.deadline < now)
            .order_by(UploadSession.created_at.asc())
            .limit(limit)
        )
        async with self._session_maker() as db:
            return list((await db.execute(stmt)).scalars().all())

    # ─────────────────────────────────────────────────────────────
    # 🎬 Video records
    # ─────────────────────────────────────────────────────────────
    async def get_record(self, submission_id: int) -> Optional[VideoRecord]:
        stmt = select(VideoRecord).where(VideoRecord.owner_submission_id == submission_id)
        async with self._session_maker() as db:
            return (await db.execute(stmt)).scalars().first()

    async def get_live_record_by_artifact(self, artifact_id: str) -> Optional[VideoRecord]:
        stmt = select(VideoRecord).where(
            VideoRecord.artifact_id == artifact_id,
            VideoRecord.status != VideoStatus.DELETED,
        )
        async with self._session_maker() as db:
            return (await db.execute(stmt)).scalars().first()

    async def insert_record(self, record: VideoRecord) -> bool:
        """Insert a new record; False if another writer created the submission's row first."""
        try:
            async with self._tx() as db:
                db.add(record)
        except IntegrityError:
            logger.info("record for submission %s already exists", record.owner_submission_id)
            return False
        return True

    async def update_record_if(
        self,
        submission_id: int,
        *,
        from_statuses: Sequence[VideoStatus],
        artifact_id: Optional[str] = None,
        now: datetime,
        **values: Any,
    ) -> bool:
        """Conditional update keyed by submission id (and optionally the bound artifact)."""
        conds = [
            VideoRecord.owner_submission_id == submission_id,
            VideoRecord.status.in_(tuple(from_statuses)),
        ]
        if artifact_id is not None:
            conds.append(VideoRecord.artifact_id == artifact_id)
        stmt = update(VideoRecord).where(and_(*conds)).values(updated_at=now, **values)
        async with self._tx() as db:
            result = await db.execute(stmt)
        return result.rowcount == 1

    async def replace_record_artifact(
        self,
        submission_id: int,
        *,
        old_artifact_id: str,
        new_artifact_id: str,
        from_statuses: Sequence[VideoStatus],
        now: datetime,
        **values: Any,
    ) -> bool:
        """Re-point a submission's record at a new artifact (a fresh lifecycle) while still in `from_statuses`."""
        stmt = (
            update(VideoRecord)
            .where(
                VideoRecord.owner_submission_id == submission_id,
                VideoRecord.artifact_id == old_artifact_id,
                VideoRecord.status.in_(tuple(from_statuses)),
            )
            .values(artifact_id=new_artifact_id, updated_at=now, **values)
        )
        async with self._tx() as db:
            result = await db.execute(stmt)
        return result.rowcount == 1

    async def list_records(
        self,
        *,
        statuses: Sequence[VideoStatus],
        created_before: Optional[datetime] = None,
        limit: int,
    ) -> List[VideoRecord]:
        stmt = select(VideoRecord).where(VideoRecord.status.in_(tuple(statuses)))
        if created_before is not None:
            stmt = stmt.where(VideoRecord.created_at < created_before)
        stmt = stmt.order_by(VideoRecord.created_at.asc()).limit(limit)
        async with self._session_maker() as db:
            return list((await db.execute(stmt)).scalars().all())


__all__ = ["VideoStore"]
