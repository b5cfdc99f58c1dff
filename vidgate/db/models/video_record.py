from __future__ import annotations

"""
🎬 Vidgate — VideoRecord
=======================

One record per submission pointing at the remote artifact that backs it.

Lifecycle (strict state machine)
--------------------------------
    pending   → uploading | ready | error | deleted
    uploading → uploading | ready | error | deleted
    ready     → ready | error | deleted
    error     → uploading | ready | error | deleted
    deleted   → (terminal; a replacement upload starts a fresh lifecycle)

``ready → uploading`` is never allowed. Only the reconciler and the reaper
write this table.
"""

from enum import Enum as PyEnum
from typing import Dict, FrozenSet
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, Enum, Float, String, Text, Uuid

from vidgate.db.base_class import Base, TimestampMixin


class VideoStatus(str, PyEnum):
    PENDING = "pending"
    UPLOADING = "uploading"
    READY = "ready"
    ERROR = "error"
    DELETED = "deleted"


_S = VideoStatus
ALLOWED_TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    _S.PENDING: frozenset({_S.UPLOADING, _S.READY, _S.ERROR, _S.DELETED}),
    _S.UPLOADING: frozenset({_S.UPLOADING, _S.READY, _S.ERROR, _S.DELETED}),
    _S.READY: frozenset({_S.READY, _S.ERROR, _S.DELETED}),
    _S.ERROR: frozenset({_S.UPLOADING, _S.READY, _S.ERROR, _S.DELETED}),
    _S.DELETED: frozenset({_S.DELETED}),
}


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class VideoRecord(TimestampMixin, Base):
    """Submission ↔ remote artifact link with processing status."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    artifact_id = Column(String(255), nullable=False, index=True)
    owner_submission_id = Column(BigInteger, nullable=False, unique=True)
    owner_id = Column(BigInteger, nullable=False, index=True)
    assignment_id = Column(BigInteger, nullable=False, index=True)

    status = Column(
        Enum(VideoStatus, name="video_record_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=VideoStatus.PENDING,
        index=True,
    )
    file_size = Column(BigInteger, nullable=True)
    duration = Column(Float, nullable=True, doc="Seconds, as reported by the backend.")
    error_message = Column(Text, nullable=True)

    last_checked_at = Column(DateTime(timezone=True), nullable=True, doc="Last backend status poll.")
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)


__all__ = ["VideoRecord", "VideoStatus", "ALLOWED_TRANSITIONS", "can_transition"]
