from __future__ import annotations

"""
Input validation for upload requests and remote identifiers.

Failures raise `InvalidUpload` / `QuotaExceeded` with a stable `code` so the
caller can map them to messages (``invalid_mime_type``, ``file_too_large``...).
"""

import re
from pathlib import PurePosixPath
from typing import Optional

from vidgate.core.config import Settings
from vidgate.core.exceptions import InvalidUpload, QuotaExceeded

VALID_VIDEO_MIME_TYPES = frozenset({
    "video/mp4",
    "video/mpeg",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/webm",
    "video/ogg",
    "video/3gpp",
    "video/x-flv",
})

VALID_VIDEO_EXTENSIONS = frozenset({"mp4", "mpeg", "mpg", "mov", "avi", "wmv", "webm", "ogv", "3gp", "flv"})

ARTIFACT_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-]{1,255}$")
MAX_ERROR_MESSAGE_LENGTH = 1000

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def validate_file_size(file_size: int, settings: Settings) -> int:
    if not isinstance(file_size, int) or isinstance(file_size, bool) or file_size <= 0:
        raise InvalidUpload("File size must be a positive number", code="invalid_file_size")
    if file_size > settings.MAX_UPLOAD_BYTES:
        raise QuotaExceeded(
            f"File size exceeds maximum allowed size of {settings.MAX_UPLOAD_BYTES} bytes",
            details={"file_size": file_size, "max_bytes": settings.MAX_UPLOAD_BYTES},
        )
    return file_size


def validate_mime_type(mime_type: Optional[str]) -> str:
    mt = (mime_type or "").strip().lower()
    if not mt:
        raise InvalidUpload("MIME type is required", code="missing_mime_type")
    if mt not in VALID_VIDEO_MIME_TYPES:
        raise InvalidUpload(f'MIME type "{mt}" is not supported', code="invalid_mime_type")
    return mt


def validate_filename(filename: Optional[str]) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name.strip()
    if not name:
        raise InvalidUpload("Filename is required", code="missing_filename")
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if ext not in VALID_VIDEO_EXTENSIONS:
        raise InvalidUpload(f'File extension "{ext}" is not supported', code="invalid_file_extension")
    return name[:255]


def validate_artifact_id(artifact_id: Optional[str]) -> str:
    if not artifact_id:
        raise InvalidUpload("Artifact id is required", code="missing_artifact_id")
    if not ARTIFACT_ID_PATTERN.fullmatch(artifact_id):
        raise InvalidUpload("Artifact id contains invalid characters", code="invalid_artifact_id")
    return artifact_id


def validate_positive_id(value: int, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise InvalidUpload(f"{name} must be a positive integer", code=f"invalid_{name}")
    return value


def sanitize_error_message(message: Optional[str]) -> str:
    """Strip markup/control characters and cap at 1000 characters."""
    text = _CONTROL_RE.sub("", _TAG_RE.sub("", message or "")).strip()
    if len(text) > MAX_ERROR_MESSAGE_LENGTH:
        text = text[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return text


__all__ = [
    "VALID_VIDEO_MIME_TYPES",
    "VALID_VIDEO_EXTENSIONS",
    "validate_file_size",
    "validate_mime_type",
    "validate_filename",
    "validate_artifact_id",
    "validate_positive_id",
    "sanitize_error_message",
]
