from __future__ import annotations

"""
Vidgate · HTTP Utilities
========================

Shared helpers for API routers:

- Safe filename sanitization
- Content-Disposition with RFC 5987 `filename*` for non-ASCII names
- No-store JSON helper (grants and upload endpoints must never be cached)
"""

import re
from typing import Any, Optional
from urllib.parse import quote

from fastapi.responses import JSONResponse

__all__ = ["sanitize_filename", "build_content_disposition", "json_no_store", "NO_STORE_HEADERS"]

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache", "Expires": "0"}


def sanitize_filename(name: Optional[str], fallback: str = "video.mp4") -> str:
    """Return a safe filename limited to ``[A-Za-z0-9._-]`` and underscores for spaces.

    >>> sanitize_filename("  My Talk (Final).mp4  ")
    'My_Talk_Final.mp4'
    >>> sanitize_filename("", fallback="clip.mp4")
    'clip.mp4'
    """
    s = (name or "").strip()
    if not s:
        return fallback
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"[^A-Za-z0-9._-]", "", s)
    return s or fallback


def build_content_disposition(filename: Optional[str], *, fallback: str = "video.mp4") -> Optional[str]:
    """Attachment disposition for a download filename (None when no filename)."""
    if not filename:
        return None
    cd = f'attachment; filename="{sanitize_filename(filename, fallback=fallback)}"'
    if any(ord(c) > 127 for c in filename):
        cd += f"; filename*=UTF-8''{quote(filename, encoding='utf-8', safe='')}"
    return cd


def json_no_store(payload: Any, status_code: int = 200, *, headers: Optional[dict] = None) -> JSONResponse:
    """Return a JSON response with strict `no-store` caching."""
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump()
    resp = JSONResponse(content=payload, status_code=status_code)
    for k, v in {**NO_STORE_HEADERS, **(headers or {})}.items():
        resp.headers[k] = v
    return resp
