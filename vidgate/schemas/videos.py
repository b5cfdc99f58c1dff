from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, conint, constr

from vidgate.core.config import MAX_GRANT_TTL_SECONDS


class CreateUploadSessionInput(BaseModel):
    assignment_id: int
    submission_id: int
    file_size: int = Field(..., description="Declared size in bytes")
    mime_type: constr(strip_whitespace=True, min_length=1, max_length=100)
    filename: constr(strip_whitespace=True, min_length=1, max_length=255)
    idempotency_key: Optional[constr(strip_whitespace=True, min_length=1, max_length=128)] = None


class UploadSessionOut(BaseModel):
    session_id: str
    artifact_id: str
    transport_kind: str
    expected_size: int
    bytes_confirmed: int
    status: str
    chunk_size: int
    upload_endpoint: str
    direct_upload: Optional[Dict[str, Any]] = None


class ChunkAcceptedOut(BaseModel):
    session_id: str
    bytes_confirmed: int
    completed: bool
    status: str


class VideoRecordOut(BaseModel):
    submission_id: int
    artifact_id: str
    status: str
    file_size: Optional[int] = None
    duration: Optional[float] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "VideoRecordOut":
        return cls(
            submission_id=record.owner_submission_id,
            artifact_id=record.artifact_id,
            status=record.status.value,
            file_size=record.file_size,
            duration=record.duration,
            error_message=record.error_message,
        )


class PlaybackGrantInput(BaseModel):
    submission_id: int
    artifact_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=255)] = None
    ttl_seconds: Optional[conint(ge=1, le=MAX_GRANT_TTL_SECONDS)] = None
    download_filename: Optional[constr(strip_whitespace=True, min_length=1, max_length=255)] = None


__all__ = [
    "CreateUploadSessionInput",
    "UploadSessionOut",
    "ChunkAcceptedOut",
    "VideoRecordOut",
    "PlaybackGrantInput",
]
