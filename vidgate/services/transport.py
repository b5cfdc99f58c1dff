from __future__ import annotations

"""
🧩 Vidgate • Chunked transport (resumable, TUS-style)
====================================================

Per-session state machine::

    created → uploading → completed
       │         │
       └─────────┴──→ failed   (reaper or cancel claim, permanent finalize error)

Rules
-----
• A chunk is accepted only at ``offset == bytes_confirmed``; gaps and overlaps
  both fail with `OffsetMismatch` (the client re-reads the offset and resumes).
• The confirmed offset is advanced with a compare-and-set, so two handlers
  racing on the same session cannot both commit.
• Direct transport is the single-chunk case: offset 0, the whole file.
• When ``bytes_confirmed == expected_size`` the backend upload is finalized and
  the session becomes ``completed``; confirmation happens afterwards.
• Remote calls go through the retry controller with the chunk budget.
"""

import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional
from uuid import UUID

from vidgate.core.config import Settings
from vidgate.core.exceptions import (
    AppException,
    BackendServerError,
    ChunkOutOfBounds,
    ErrorKind,
    InvalidTransition,
    OffsetMismatch,
    SessionExpired,
    SessionNotFound,
)
from vidgate.db.models import OPEN_SESSION_STATUSES, SessionStatus, TransportKind, UploadSession
from vidgate.repositories.videos import VideoStore
from vidgate.services.backends import VideoBackend
from vidgate.services.retry import RetryPolicy, retry_async
from vidgate.services.validation import sanitize_error_message
from vidgate.utils.clock import Clock, Sleeper, as_utc, real_sleep, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkResult:
    session: UploadSession
    bytes_confirmed: int
    completed: bool


class ChunkedTransport:
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
        self._chunk_policy = RetryPolicy.from_settings(settings, chunk=True)
        self._policy = RetryPolicy.from_settings(settings)

    # ─────────────────────────────────────────────────────────────
    # 📥 Accept one chunk
    # ─────────────────────────────────────────────────────────────
    async def accept_chunk(self, session_id: UUID, offset: int, data: bytes) -> ChunkResult:
        """
        Steps
        -----
        1) Load the session and check it is still open and within its deadline.
        2) Exact offset check first (gaps and overlaps), then bounds.
        3) Push the bytes to the backend (retried on transient errors).
        4) Compare-and-set the new offset (plus multipart parts, if any).
        5) On the final byte, finalize remotely and mark the session completed.
        """
        # ── [Step 1] Session state ────────────────────────────────────────
        upload = await self._load_open(session_id)

        # ── [Step 2] Offset, then bounds ──────────────────────────────────
        size = len(data)
        if size == 0:
            raise ChunkOutOfBounds("Chunk is empty")
        if offset != upload.bytes_confirmed:
            raise OffsetMismatch(expected=upload.bytes_confirmed, received=offset)
        if offset + size > upload.expected_size:
            raise ChunkOutOfBounds(
                "Chunk extends past the declared file size",
                details={"offset": offset, "chunk_size": size, "expected_size": upload.expected_size},
            )
        if upload.transport_kind is TransportKind.DIRECT and size != upload.expected_size:
            raise ChunkOutOfBounds(
                "Direct uploads must send the whole file in one request",
                details={"chunk_size": size, "expected_size": upload.expected_size},
            )

        # ── [Step 3] Remote write ─────────────────────────────────────────
        receipt = await retry_async(
            lambda: self.backend.upload_chunk(upload, offset=offset, data=data),
            policy=self._chunk_policy,
            sleep=self._sleep,
            label=f"chunk {upload.id}@{offset}",
        )
        new_offset = min(receipt.new_offset, offset + size)
        if new_offset <= offset:
            raise BackendServerError("Backend did not advance the upload offset")

        # ── [Step 4] Commit ───────────────────────────────────────────────
        values = {"remote_parts": receipt.parts} if receipt.parts is not None else {}
        committed = await self.store.advance_offset(
            upload.id, expected=offset, new_offset=new_offset, now=self._clock(), **values
        )
        if not committed:
            fresh = await self.store.get_session(upload.id)
            current = fresh.bytes_confirmed if fresh is not None else offset
            logger.info("offset race on session %s: %s already moved to %s", upload.id, offset, current)
            raise OffsetMismatch(expected=current, received=offset)

        # ── [Step 5] Completion ───────────────────────────────────────────
        if new_offset == upload.expected_size:
            upload = await self.complete_session(upload.id)
            return ChunkResult(session=upload, bytes_confirmed=new_offset, completed=True)
        upload = await self.store.get_session(upload.id)
        return ChunkResult(session=upload, bytes_confirmed=new_offset, completed=False)

    # ─────────────────────────────────────────────────────────────
    # 🔁 Resume
    # ─────────────────────────────────────────────────────────────
    async def current_offset(self, session_id: UUID) -> UploadSession:
        """
        Session with its resumable offset.

        If the remote holds more bytes than we persisted (a chunk landed but the
        commit was lost), the remote offset is adopted. It never moves backwards
        and never past `expected_size`.
        """
        upload = await self.store.get_session(session_id)
        if upload is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        if not upload.is_open:
            return upload
        try:
            remote = await self.backend.remote_offset(upload)
        except AppException as e:
            if e.kind is not ErrorKind.TRANSIENT:
                raise
            logger.warning("remote offset unavailable for %s (%s); using persisted offset", upload.id, e.code)
            return upload
        if remote is None or remote <= upload.bytes_confirmed:
            return upload

        adopted = min(remote, upload.expected_size)
        if await self.store.advance_offset(upload.id, expected=upload.bytes_confirmed, new_offset=adopted, now=self._clock()):
            logger.info("session %s adopted remote offset %s (was %s)", upload.id, adopted, upload.bytes_confirmed)
            if adopted == upload.expected_size:
                return await self.complete_session(upload.id)
        return await self.store.get_session(upload.id)

    # ─────────────────────────────────────────────────────────────
    # ✅ Completion
    # ─────────────────────────────────────────────────────────────
    async def complete_session(self, session_id: UUID) -> UploadSession:
        """
        Finalize a fully confirmed session. Safe to call again: a completed
        session is returned as is. Permanent finalize errors fail the session;
        transient ones leave it open so a later confirm can finish it.
        """
        upload = await self.store.get_session(session_id)
        if upload is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        if upload.status is SessionStatus.COMPLETED:
            return upload
        if not upload.is_open or upload.bytes_confirmed != upload.expected_size:
            raise InvalidTransition(
                "Upload is not complete",
                code="upload_incomplete",
                details={"bytes_confirmed": upload.bytes_confirmed, "expected_size": upload.expected_size},
            )
        try:
            await retry_async(
                lambda: self.backend.finalize(upload),
                policy=self._policy,
                sleep=self._sleep,
                label=f"finalize {upload.id}",
            )
        except AppException as e:
            if e.kind is not ErrorKind.TRANSIENT:
                await self.store.transition_session(
                    upload.id,
                    from_statuses=OPEN_SESSION_STATUSES,
                    to_status=SessionStatus.FAILED,
                    now=self._clock(),
                    error_message=sanitize_error_message(e.message),
                )
            raise
        completed = await self.store.transition_session(
            upload.id,
            from_statuses=OPEN_SESSION_STATUSES,
            to_status=SessionStatus.COMPLETED,
            now=self._clock(),
        )
        fresh = await self.store.get_session(upload.id)
        if not completed and (fresh is None or fresh.status is not SessionStatus.COMPLETED):
            # The reaper or a cancel claimed the session first
            raise SessionExpired("Upload session was closed before it could complete")
        logger.info("upload session %s completed (%s bytes)", upload.id, upload.expected_size)
        return fresh

    # ── internals ───────────────────────────────────────────────────────────
    async def _load_open(self, session_id: UUID) -> UploadSession:
        upload = await self.store.get_session(session_id)
        if upload is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        if upload.status is SessionStatus.COMPLETED:
            raise InvalidTransition(
                "Upload already completed",
                code="upload_complete",
                details={"bytes_confirmed": upload.bytes_confirmed},
            )
        if not upload.is_open:
            raise SessionExpired(f"Upload session is {upload.status.value}")
        if as_utc(upload.deadline) <= self._clock():
            raise SessionExpired("Upload session deadline has passed")
        return upload


async def drive_upload(
    transport: ChunkedTransport,
    session_id: UUID,
    stream: BinaryIO,
    *,
    chunk_size: int,
    max_resumes: int = 3,
) -> ChunkResult:
    """
    Sequential client loop: read from the persisted offset, send, repeat.

    An `OffsetMismatch` means our view of the offset is stale; re-query it and
    continue from there (at most `max_resumes` times in a row).
    """
    upload = await transport.current_offset(session_id)
    offset = upload.bytes_confirmed
    resumes = 0
    result: Optional[ChunkResult] = None
    while offset < upload.expected_size:
        stream.seek(offset)
        chunk = stream.read(min(chunk_size, upload.expected_size - offset))
        try:
            result = await transport.accept_chunk(session_id, offset, chunk)
        except OffsetMismatch:
            resumes += 1
            if resumes > max_resumes:
                raise
            upload = await transport.current_offset(session_id)
            offset = upload.bytes_confirmed
            continue
        resumes = 0
        offset = result.bytes_confirmed
        if result.completed:
            return result
    if result is None:
        upload = await transport.current_offset(session_id)
        return ChunkResult(session=upload, bytes_confirmed=upload.bytes_confirmed, completed=upload.status is SessionStatus.COMPLETED)
    return result


__all__ = ["ChunkedTransport", "ChunkResult", "drive_upload"]
