from __future__ import annotations

"""
📤 Vidgate — UploadSession
=========================

One row per upload slot handed to a client. Tracks the reserved remote
artifact, the negotiated transport and the confirmed byte offset.

Lifecycle
---------
``created → uploading → completed``. Both open states (``created`` and
``uploading``) may move to ``failed``: the reaper and a client cancel claim a
session that way before releasing its artifact, and a permanent finalize error
fails it. ``failed → deleted`` once the remote artifact is gone; ``deleted``
is terminal.

Integrity
---------
• ``0 <= bytes_confirmed <= expected_size`` (CHECK).
• ``bytes_confirmed`` only moves forward: the store updates it with a
  compare-and-set on the previous value.
"""

from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from vidgate.db.base_class import Base, TimestampMixin


# ───────────────────────────────────────────────────────────────
# Enums
# ───────────────────────────────────────────────────────────────
class TransportKind(str, PyEnum):
    DIRECT = "direct"     # single PUT/POST of the whole file
    CHUNKED = "chunked"   # offset-tracked resumable chunks


class SessionStatus(str, PyEnum):
    CREATED = "created"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    DELETED = "deleted"


OPEN_SESSION_STATUSES = (SessionStatus.CREATED, SessionStatus.UPLOADING)


def _values(enum_cls):
    return [m.value for m in enum_cls]


# ───────────────────────────────────────────────────────────────
# Model
# ───────────────────────────────────────────────────────────────
class UploadSession(TimestampMixin, Base):
    """Upload slot owned by one principal until confirmed or reaped."""

    # ── Identity ────────────────────────────────────────────────────────────
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    artifact_id = Column(String(255), nullable=False, index=True, doc="Remote video uid or S3 object id.")
    owner_id = Column(BigInteger, nullable=False, index=True)
    assignment_id = Column(BigInteger, nullable=False)
    submission_id = Column(BigInteger, nullable=False, index=True)
    idempotency_key = Column(String(128), nullable=True)

    # ── File ────────────────────────────────────────────────────────────────
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    expected_size = Column(BigInteger, nullable=False)

    # ── Transport ───────────────────────────────────────────────────────────
    transport_kind = Column(
        Enum(TransportKind, name="upload_transport_kind", values_callable=_values),
        nullable=False,
    )
    remote_upload_endpoint = Column(Text, nullable=True, doc="TUS URL, direct upload URL or presigned PUT.")
    remote_upload_id = Column(String(1024), nullable=True, doc="S3 multipart UploadId.")
    remote_parts = Column(JSON, nullable=True, doc="S3 multipart parts: [{PartNumber, ETag}].")
    bytes_confirmed = Column(BigInteger, nullable=False, default=0)

    # ── Lifecycle ───────────────────────────────────────────────────────────
    status = Column(
        Enum(SessionStatus, name="upload_session_status", values_callable=_values),
        nullable=False,
        default=SessionStatus.CREATED,
        index=True,
    )
    deadline = Column(DateTime(timezone=True), nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("bytes_confirmed >= 0", name="bytes_confirmed_non_negative"),
        CheckConstraint("bytes_confirmed <= expected_size", name="bytes_confirmed_within_size"),
        CheckConstraint("expected_size > 0", name="expected_size_positive"),
        UniqueConstraint("owner_id", "idempotency_key", name="uq_upload_sessions_owner_idempotency"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES


__all__ = ["UploadSession", "TransportKind", "SessionStatus", "OPEN_SESSION_STATUSES"]
