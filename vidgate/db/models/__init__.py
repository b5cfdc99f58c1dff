"""
Vidgate — ORM models
====================

Import all models so their tables are registered on `Base.metadata`.
Keep this file import-only; no runtime logic.
"""

from vidgate.db.base_class import Base

from .upload_session import OPEN_SESSION_STATUSES, SessionStatus, TransportKind, UploadSession
from .video_record import ALLOWED_TRANSITIONS, VideoRecord, VideoStatus, can_transition

__all__ = [
    "Base",
    "UploadSession",
    "SessionStatus",
    "TransportKind",
    "OPEN_SESSION_STATUSES",
    "VideoRecord",
    "VideoStatus",
    "ALLOWED_TRANSITIONS",
    "can_transition",
]
