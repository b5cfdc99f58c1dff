from __future__ import annotations

"""
Structured JSON exception handlers.

`vidgate.main.create_app` installs these. Every `AppException` is rendered as
`{error, kind, code, message, suggestions, can_retry, ...}` so callers can show
the suggestions and offer a retry for retryable kinds. Plain HTTP errors and
request validation errors keep the same envelope.
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidgate.core.exceptions import AppException, ErrorKind

log = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or "N/A"


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:  # type: ignore
    if exc.kind is ErrorKind.CONFIGURATION:
        log.error("configuration error on %s: %s", request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem(request_id=_request_id(request)),
        headers=getattr(exc, "headers", None),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:  # type: ignore
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "kind": ErrorKind.NOT_FOUND.value if exc.status_code == 404 else ErrorKind.VALIDATION.value,
            "code": "http_error",
            "message": detail,
            "suggestions": [],
            "can_retry": False,
            "request_id": _request_id(request),
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": True,
            "kind": ErrorKind.VALIDATION.value,
            "code": "request_validation_error",
            "message": "Validation error",
            "suggestions": [],
            "can_retry": False,
            "request_id": _request_id(request),
            "errors": exc.errors(),
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore
    # Hide internals; the traceback goes to the log.
    log.exception("unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": True,
            "kind": ErrorKind.TRANSIENT.value,
            "code": "internal_error",
            "message": "An unexpected error occurred.",
            "suggestions": ["Wait a few moments and try again."],
            "can_retry": True,
            "request_id": _request_id(request),
        },
    )


__all__ = [
    "app_exception_handler",
    "http_exception_handler",
    "validation_exception_handler",
    "global_exception_handler",
]
