# vidgate/core/exceptions.py
from __future__ import annotations

"""
Vidgate — Application Exceptions
================================
A small, consistent layer on top of FastAPI/Starlette's `HTTPException` that
attaches a structured error **kind**, a list of human-readable suggestions and
retry hints. Handlers in `vidgate.core.exception_handlers` render it.

Taxonomy (`ErrorKind`)
----------------------
- configuration_error : key material / backend config missing or invalid (never retried)
- validation_error    : bad size / mime / offset / id (permanent)
- transient_error     : network / 5xx / 429 / auth expiry (retried by the retry controller)
- access_denied       : carries a reason code (never retried)
- not_found           : session or artifact missing (not retried)

Usage
-----
    raise OffsetMismatch(expected=400, received=500)
    raise AccessDenied(reason="not_ready", details={"status": "uploading"})
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status

__all__ = [
    "ErrorKind",
    "AppException",
    "NotConfigured",
    "KeyMaterialError",
    "SignError",
    "QuotaExceeded",
    "InvalidUpload",
    "RateLimited",
    "OffsetMismatch",
    "ChunkOutOfBounds",
    "SessionExpired",
    "SessionNotFound",
    "AccessDenied",
    "ArtifactNotFound",
    "InvalidTransition",
    "TransientError",
    "NetworkError",
    "BackendServerError",
    "BackendRateLimited",
    "BackendAuthError",
]


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration_error"
    VALIDATION = "validation_error"
    TRANSIENT = "transient_error"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"


# Suggestion strings rendered by the caller's UI
SUGGEST_CHECK_CONNECTION = "Check your internet connection and try again."
SUGGEST_WAIT_AND_RETRY = "Wait a few moments and try again."
SUGGEST_REFRESH_PAGE = "Refresh the page and try again."
SUGGEST_CONTACT_SUPPORT = "Contact support if the problem persists."
SUGGEST_DIFFERENT_FILE = "Try a different or smaller video file."
SUGGEST_RESUME = "Resume the upload from the offset reported by the server."


# ──────────────────────────────────────────────────────────────
# 📦 Core: AppException
# ──────────────────────────────────────────────────────────────
class AppException(HTTPException):
    """Base application-level exception with structured metadata.

    Attributes
    -----------
    kind : ErrorKind
        Taxonomy bucket used by the retry controller and the UI.
    message : str
        Human-readable error message (serialized as `detail` as well).
    code : str
        Stable machine code (e.g. ``offset_mismatch``).
    details : Any
        Machine-readable specifics (expected offset, current status, ...).
    suggestions : list[str]
        What the user can do about it.
    can_retry : bool
        Whether offering a manual retry makes sense.
    retries_exhausted : bool
        Set by the retry controller when a transient error outlived its budget.
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    default_status: int = status.HTTP_400_BAD_REQUEST
    default_code: str = "error"
    default_suggestions: tuple[str, ...] = (SUGGEST_REFRESH_PAGE,)
    default_can_retry: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Any] = None,
        suggestions: Optional[List[str]] = None,
        can_retry: Optional[bool] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(status_code=status_code or self.default_status, detail=message, headers=headers)
        self.message: str = message
        self.code: str = code or self.default_code
        self.details: Optional[Any] = details
        self.suggestions: List[str] = list(suggestions if suggestions is not None else self.default_suggestions)
        self.can_retry: bool = self.default_can_retry if can_retry is None else can_retry
        self.retries_exhausted: bool = False

    def __str__(self) -> str:
        return self.message

    # ── [Helper] Canonical body used by handlers ───────────────────────────
    def to_problem(self, *, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Return the structured error body."""
        body: Dict[str, Any] = {
            "error": True,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "suggestions": self.suggestions,
            "can_retry": self.can_retry,
            "request_id": request_id or "N/A",
        }
        if self.details is not None:
            body["details"] = self.details
        if self.retries_exhausted:
            body["retries_exhausted"] = True
        return body


# ──────────────────────────────────────────────────────────────
# ⚙️ Configuration / signing
# ──────────────────────────────────────────────────────────────
class NotConfigured(AppException):
    """Required backend configuration or key material is absent."""

    kind = ErrorKind.CONFIGURATION
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "not_configured"
    default_suggestions = (SUGGEST_WAIT_AND_RETRY, SUGGEST_CONTACT_SUPPORT)


class KeyMaterialError(AppException):
    """Private key could not be parsed."""

    kind = ErrorKind.CONFIGURATION
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "invalid_key_material"
    default_suggestions = (SUGGEST_CONTACT_SUPPORT,)


class SignError(AppException):
    """The signing primitive rejected the payload."""

    kind = ErrorKind.CONFIGURATION
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "sign_failed"
    default_suggestions = (SUGGEST_CONTACT_SUPPORT,)


# ──────────────────────────────────────────────────────────────
# 📏 Validation
# ──────────────────────────────────────────────────────────────
class QuotaExceeded(AppException):
    default_status = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    default_code = "file_too_large"
    default_suggestions = (SUGGEST_DIFFERENT_FILE,)


class InvalidUpload(AppException):
    """Bad format, size, filename or identifier (a permanent file error)."""

    default_code = "invalid_upload"
    default_suggestions = (SUGGEST_DIFFERENT_FILE,)


class OffsetMismatch(AppException):
    default_status = status.HTTP_409_CONFLICT
    default_code = "offset_mismatch"
    default_suggestions = (SUGGEST_RESUME,)
    default_can_retry = True

    def __init__(self, *, expected: int, received: int) -> None:
        super().__init__(
            f"Chunk offset {received} does not match confirmed offset {expected}",
            details={"expected_offset": expected, "received_offset": received},
        )
        self.expected = expected
        self.received = received


class ChunkOutOfBounds(AppException):
    default_status = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    default_code = "chunk_out_of_bounds"


class InvalidTransition(AppException):
    """A lifecycle transition the state machine forbids."""

    default_status = status.HTTP_409_CONFLICT
    default_code = "invalid_transition"


# ──────────────────────────────────────────────────────────────
# 🔍 Not found / expired
# ──────────────────────────────────────────────────────────────
class SessionNotFound(AppException):
    kind = ErrorKind.NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "session_not_found"


class SessionExpired(AppException):
    kind = ErrorKind.NOT_FOUND
    default_status = status.HTTP_410_GONE
    default_code = "session_expired"
    default_suggestions = (SUGGEST_REFRESH_PAGE, "Start a new upload.")


class ArtifactNotFound(AppException):
    """The remote backend has no such artifact (HTTP 404 / NoSuchKey)."""

    kind = ErrorKind.NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "artifact_not_found"
    default_suggestions = (SUGGEST_REFRESH_PAGE, SUGGEST_CONTACT_SUPPORT)


# ──────────────────────────────────────────────────────────────
# 🔐 Access
# ──────────────────────────────────────────────────────────────
class AccessDenied(AppException):
    kind = ErrorKind.ACCESS_DENIED
    default_status = status.HTTP_403_FORBIDDEN
    default_code = "access_denied"
    default_suggestions = (SUGGEST_CONTACT_SUPPORT,)

    def __init__(self, *, reason: str, details: Optional[Dict[str, Any]] = None) -> None:
        status_code = status.HTTP_404_NOT_FOUND if reason == "not_found" else None
        body = {"reason": reason, **(details or {})}
        super().__init__(f"Access denied: {reason}", status_code=status_code, code=reason, details=body)
        self.reason = reason


class RateLimited(AppException):
    kind = ErrorKind.TRANSIENT
    default_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "rate_limited"
    default_suggestions = (SUGGEST_WAIT_AND_RETRY,)
    default_can_retry = True

    def __init__(self, *, operation: str, retry_after: int) -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(
            f"Too many {operation} requests; retry after {retry_after} seconds",
            details={"operation": operation, "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


# ──────────────────────────────────────────────────────────────
# 🌐 Transient backend errors (retried by the retry controller)
# ──────────────────────────────────────────────────────────────
class TransientError(AppException):
    kind = ErrorKind.TRANSIENT
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "transient_error"
    default_suggestions = (SUGGEST_CHECK_CONNECTION, SUGGEST_WAIT_AND_RETRY)
    default_can_retry = True


class NetworkError(TransientError):
    default_code = "network_error"


class BackendServerError(TransientError):
    default_status = status.HTTP_502_BAD_GATEWAY
    default_code = "server_error"


class BackendRateLimited(TransientError):
    default_code = "backend_rate_limited"
    default_suggestions = (SUGGEST_WAIT_AND_RETRY,)


class BackendAuthError(TransientError):
    default_status = status.HTTP_502_BAD_GATEWAY
    default_code = "auth_error"
    default_suggestions = (SUGGEST_REFRESH_PAGE,)
