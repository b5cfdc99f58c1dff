from __future__ import annotations

"""
🗄️ Vidgate • Storage backends
=============================

One protocol, two implementations:

- `StreamBackend` → hosted-video API (direct upload URL / TUS, uid = remote id)
- `S3Backend`     → S3 bucket (presigned PUT / multipart, uid = object id)

Services talk only to `VideoBackend`; they never know which store is behind it.
Every method raises taxonomy errors (`vidgate.core.exceptions`) so the retry
controller can classify failures without backend-specific knowledge.

Remote states reported by `fetch_status`
----------------------------------------
    ready       → playable, size/duration known
    processing  → accepted, still transcoding / uploading
    error       → backend rejected the media (reason attached)
    missing     → artifact does not exist remotely
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol
from uuid import uuid4

import httpx

from vidgate.core.config import Settings
from vidgate.core.exceptions import ArtifactNotFound, ChunkOutOfBounds
from vidgate.db.models import SessionStatus, TransportKind, UploadSession
from vidgate.services.validation import sanitize_error_message
from vidgate.utils.aws import MIN_PART_SIZE, S3Client
from vidgate.utils.stream_api import StreamApiClient

logger = logging.getLogger(__name__)

RemoteState = Literal["ready", "processing", "error", "missing"]

_STREAM_PROCESSING_STATES = {"queued", "inprogress", "pendingupload", "downloading"}


@dataclass(frozen=True)
class Reservation:
    artifact_id: str
    upload_endpoint: Optional[str]
    remote_upload_id: Optional[str] = None


@dataclass(frozen=True)
class RemoteStatus:
    state: RemoteState
    file_size: Optional[int] = None
    duration: Optional[float] = None
    error_message: Optional[str] = None
    # False while the remote is still waiting for the bytes of a reserved upload
    received: bool = True


@dataclass(frozen=True)
class ChunkReceipt:
    """What the remote accepted. `parts` is the full multipart list after this chunk (S3 only)."""

    new_offset: int
    parts: Optional[List[Dict[str, Any]]] = field(default=None)


class VideoBackend(Protocol):
    name: str

    async def reserve(self, *, filename: str, mime_type: str, file_size: int, transport: TransportKind) -> Reservation: ...

    async def upload_chunk(self, session: UploadSession, *, offset: int, data: bytes) -> ChunkReceipt: ...

    async def remote_offset(self, session: UploadSession) -> Optional[int]: ...

    async def finalize(self, session: UploadSession) -> None: ...

    async def fetch_status(self, artifact_id: str) -> RemoteStatus: ...

    async def delete(self, artifact_id: str, *, session: Optional[UploadSession] = None) -> bool: ...

    def describe_endpoint(self, session: UploadSession) -> Optional[Dict[str, Any]]: ...

    def resource_identity(self, artifact_id: str) -> str: ...


# ─────────────────────────────────────────────────────────────────────────────
# 🎞️ Hosted-video API
# ─────────────────────────────────────────────────────────────────────────────
class StreamBackend:
    name = "stream"

    def __init__(self, client: StreamApiClient, *, max_duration_seconds: int) -> None:
        self.client = client
        self.max_duration_seconds = max_duration_seconds

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "StreamBackend":
        return cls(
            StreamApiClient.from_settings(settings, transport=transport),
            max_duration_seconds=settings.MAX_DURATION_SECONDS,
        )

    async def reserve(self, *, filename: str, mime_type: str, file_size: int, transport: TransportKind) -> Reservation:
        if transport is TransportKind.DIRECT:
            direct = await self.client.create_direct_upload(max_duration_seconds=self.max_duration_seconds)
            return Reservation(artifact_id=direct.uid, upload_endpoint=direct.upload_url)
        tus = await self.client.create_tus_upload(
            file_size=file_size,
            filename=filename,
            max_duration_seconds=self.max_duration_seconds,
        )
        return Reservation(artifact_id=tus.uid, upload_endpoint=tus.upload_url)

    async def upload_chunk(self, session: UploadSession, *, offset: int, data: bytes) -> ChunkReceipt:
        if session.transport_kind is TransportKind.DIRECT:
            await self.client.post_direct_upload(
                session.remote_upload_endpoint,
                filename=session.filename,
                data=data,
                mime_type=session.mime_type,
            )
            return ChunkReceipt(new_offset=offset + len(data))
        new_offset = await self.client.upload_tus_chunk(session.remote_upload_endpoint, offset=offset, data=data)
        return ChunkReceipt(new_offset=new_offset)

    async def remote_offset(self, session: UploadSession) -> Optional[int]:
        if session.transport_kind is not TransportKind.CHUNKED:
            return None
        return await self.client.tus_offset(session.remote_upload_endpoint)

    async def finalize(self, session: UploadSession) -> None:
        # TUS completes on the last PATCH; direct uploads complete on the POST
        return None

    async def fetch_status(self, artifact_id: str) -> RemoteStatus:
        try:
            video = await self.client.get_video(artifact_id)
        except ArtifactNotFound:
            return RemoteStatus(state="missing")
        status = video.get("status") or {}
        state = str(status.get("state") or "").lower()
        if state == "ready":
            duration = video.get("duration")
            return RemoteStatus(
                state="ready",
                file_size=video.get("size"),
                # -1 means "not known yet"
                duration=float(duration) if duration is not None and duration >= 0 else None,
            )
        if state == "error":
            reason = status.get("errorReasonText") or status.get("errorReasonCode") or "Processing failed"
            return RemoteStatus(state="error", error_message=sanitize_error_message(str(reason)))
        if state not in _STREAM_PROCESSING_STATES:
            logger.warning("unknown remote state %r for %s; treating as processing", state, artifact_id)
        return RemoteStatus(state="processing", file_size=video.get("size"), received=state != "pendingupload")

    async def delete(self, artifact_id: str, *, session: Optional[UploadSession] = None) -> bool:
        try:
            return await self.client.delete_video(artifact_id)
        except ArtifactNotFound:
            return False

    def describe_endpoint(self, session: UploadSession) -> Optional[Dict[str, Any]]:
        if session.transport_kind is TransportKind.DIRECT:
            return {"url": session.remote_upload_endpoint, "method": "POST", "form_field": "file"}
        return {"url": session.remote_upload_endpoint, "method": "PATCH", "protocol": "tus"}

    def resource_identity(self, artifact_id: str) -> str:
        return artifact_id

    async def aclose(self) -> None:
        await self.client.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# 🧊 S3
# ─────────────────────────────────────────────────────────────────────────────
class S3Backend:
    """
    Objects live at ``{prefix}/{artifact_id}``. boto3 is synchronous, so every
    call runs in a worker thread (`asyncio.to_thread`).
    """

    name = "s3"

    def __init__(self, s3: S3Client, *, key_prefix: str = "videos", presign_ttl_seconds: int = 3600) -> None:
        self.s3 = s3
        self.key_prefix = key_prefix.strip("/")
        self.presign_ttl_seconds = presign_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any = None) -> "S3Backend":
        return cls(
            S3Client(settings, client=client),
            key_prefix=settings.S3_KEY_PREFIX,
            presign_ttl_seconds=settings.UPLOAD_SESSION_DEADLINE_SECONDS,
        )

    def key_for(self, artifact_id: str) -> str:
        return f"{self.key_prefix}/{artifact_id}" if self.key_prefix else artifact_id

    async def reserve(self, *, filename: str, mime_type: str, file_size: int, transport: TransportKind) -> Reservation:
        artifact_id = str(uuid4())
        key = self.key_for(artifact_id)
        if transport is TransportKind.DIRECT:
            url = await asyncio.to_thread(
                self.s3.presigned_put, key, content_type=mime_type, expires_in=self.presign_ttl_seconds
            )
            return Reservation(artifact_id=artifact_id, upload_endpoint=url)
        upload_id = await asyncio.to_thread(self.s3.create_multipart, key, content_type=mime_type)
        return Reservation(artifact_id=artifact_id, upload_endpoint=None, remote_upload_id=upload_id)

    async def upload_chunk(self, session: UploadSession, *, offset: int, data: bytes) -> ChunkReceipt:
        key = self.key_for(session.artifact_id)
        new_offset = offset + len(data)
        if session.transport_kind is TransportKind.DIRECT:
            await asyncio.to_thread(self.s3.put_bytes, key, data, content_type=session.mime_type)
            return ChunkReceipt(new_offset=new_offset)

        is_last = new_offset >= session.expected_size
        if not is_last and len(data) < MIN_PART_SIZE:
            raise ChunkOutOfBounds(
                f"Chunks must be at least {MIN_PART_SIZE} bytes except the last one",
                details={"chunk_size": len(data), "min_chunk_size": MIN_PART_SIZE},
            )
        parts = list(session.remote_parts or [])
        part_number = len(parts) + 1
        etag = await asyncio.to_thread(
            self.s3.upload_part, key, upload_id=session.remote_upload_id, part_number=part_number, data=data
        )
        parts.append({"PartNumber": part_number, "ETag": etag})
        return ChunkReceipt(new_offset=new_offset, parts=parts)

    async def remote_offset(self, session: UploadSession) -> Optional[int]:
        # Parts are committed together with the offset, so the row is authoritative
        return None

    async def finalize(self, session: UploadSession) -> None:
        if session.transport_kind is not TransportKind.CHUNKED:
            return
        await asyncio.to_thread(
            self.s3.complete_multipart,
            self.key_for(session.artifact_id),
            upload_id=session.remote_upload_id,
            parts=list(session.remote_parts or []),
        )

    async def fetch_status(self, artifact_id: str) -> RemoteStatus:
        meta = await asyncio.to_thread(self.s3.head, self.key_for(artifact_id))
        if meta is None:
            return RemoteStatus(state="missing")
        return RemoteStatus(state="ready", file_size=meta.get("ContentLength"))

    async def delete(self, artifact_id: str, *, session: Optional[UploadSession] = None) -> bool:
        """
        Abort a dangling multipart upload (if any), then delete the object.
        Returns False when nothing existed remotely.
        """
        key = self.key_for(artifact_id)
        aborted = False
        if session is not None and session.remote_upload_id and session.status is not SessionStatus.COMPLETED:
            aborted = await asyncio.to_thread(self.s3.abort_multipart, key, upload_id=session.remote_upload_id)
        meta = await asyncio.to_thread(self.s3.head, key)
        if meta is None:
            return aborted
        return await asyncio.to_thread(self.s3.delete, key)

    def describe_endpoint(self, session: UploadSession) -> Optional[Dict[str, Any]]:
        if session.transport_kind is TransportKind.DIRECT and session.remote_upload_endpoint:
            return {
                "url": session.remote_upload_endpoint,
                "method": "PUT",
                "headers": {"Content-Type": session.mime_type},
            }
        # Multipart parts go through the chunk endpoint
        return None

    def resource_identity(self, artifact_id: str) -> str:
        return self.key_for(artifact_id)

    async def aclose(self) -> None:
        return None


def build_backend(settings: Settings) -> VideoBackend:
    """Instantiate the configured backend; raises `NotConfigured` without credentials."""
    if settings.STORAGE_BACKEND == "s3":
        return S3Backend.from_settings(settings)
    return StreamBackend.from_settings(settings)


__all__ = [
    "Reservation",
    "RemoteStatus",
    "ChunkReceipt",
    "VideoBackend",
    "StreamBackend",
    "S3Backend",
    "build_backend",
]
