from __future__ import annotations

"""
🎞️ Vidgate • Hosted-video API client (httpx)
============================================

Async client for a Cloudflare-Stream-style API:

- `create_direct_upload`   → one-shot upload URL + reserved uid
- `create_tus_upload`      → TUS creation (``Tus-Resumable: 1.0.0``), returns the
                             ``Location`` URL and the uid (``stream-media-id``
                             header, URL-path fallback)
- `upload_tus_chunk`       → TUS ``PATCH`` with ``Upload-Offset``
- `tus_offset`             → TUS ``HEAD`` (current remote offset)
- `post_direct_upload`     → multipart POST of a whole file to a one-shot URL
- `get_video` / `delete_video` / `require_signed_urls`

HTTP failures map onto the service taxonomy:
401/403 → `BackendAuthError`, 404 → `ArtifactNotFound`, 429 → `BackendRateLimited`,
400/413/415 → `InvalidUpload`, >=500 → `BackendServerError`,
transport failures → `NetworkError`.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from vidgate.core.config import Settings
from vidgate.core.exceptions import (
    AppException,
    ArtifactNotFound,
    BackendAuthError,
    BackendRateLimited,
    BackendServerError,
    InvalidUpload,
    NetworkError,
    NotConfigured,
)
from vidgate.services.validation import sanitize_error_message, validate_artifact_id

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
_UID_RE = re.compile(r"^[A-Za-z0-9]+$")


@dataclass(frozen=True)
class DirectUpload:
    uid: str
    upload_url: str


@dataclass(frozen=True)
class TusUpload:
    uid: str
    upload_url: str


def _error_message(resp: httpx.Response) -> str:
    try:
        errors = (resp.json() or {}).get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return sanitize_error_message(str(errors[0]["message"]))
    except ValueError:
        pass
    return "Unknown error"


def map_http_error(resp: httpx.Response, *, op: str) -> AppException:
    code = resp.status_code
    msg = f"{op}: HTTP {code}: {_error_message(resp)}"
    if code in (401, 403):
        return BackendAuthError(msg)
    if code == 404:
        return ArtifactNotFound(msg)
    if code == 429:
        return BackendRateLimited(msg)
    if code >= 500:
        return BackendServerError(msg)
    return InvalidUpload(msg, code="backend_rejected")


def uid_from_tus_url(url: str) -> str:
    """Fallback: the uid is the path segment after ``media`` (trailing ``_`` stripped)."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    try:
        uid = segments[segments.index("media") + 1].rstrip("_")
    except (ValueError, IndexError):
        raise BackendServerError("Cannot find media segment in TUS URL") from None
    if not _UID_RE.fullmatch(uid):
        raise BackendServerError("Extracted invalid uid from TUS URL")
    return uid


class StreamApiClient:
    """
    Parameters
    ----------
    base_url : str
        API root, e.g. ``https://api.cloudflare.com/client/v4``.
    account_id, api_token : str
        Account scope and bearer token (never logged).
    transport : httpx.AsyncBaseTransport | None
        Injected in tests (`httpx.MockTransport`).
    """

    def __init__(
        self,
        *,
        base_url: str,
        account_id: Optional[str],
        api_token: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not (account_id and api_token):
            raise NotConfigured("Hosted-video API credentials are not configured")
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_token}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "StreamApiClient":
        token = settings.STREAM_API_TOKEN
        return cls(
            base_url=settings.STREAM_API_BASE_URL,
            account_id=settings.STREAM_ACCOUNT_ID,
            api_token=token.get_secret_value() if token else None,
            timeout=settings.STREAM_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/accounts/{self.account_id}/stream{path}"

    async def _send(self, method: str, url: str, *, op: str, authenticated: bool = True, **kwargs: Any) -> httpx.Response:
        request = self._client.build_request(method, url, **kwargs)
        if not authenticated:
            # Upload URLs are pre-authorized; the account token never leaves for them
            del request.headers["Authorization"]
        try:
            resp = await self._client.send(request)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{op}: request timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{op}: {type(e).__name__}") from e
        if resp.status_code >= 400:
            logger.warning("stream api %s failed: HTTP %s", op, resp.status_code)
            raise map_http_error(resp, op=op)
        return resp

    async def _json(self, method: str, path: str, *, op: str, body: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._send(method, self._url(path), op=op, json=body)
        # Deletes may come back 200 with an empty body
        if not resp.content:
            return None
        try:
            payload = resp.json()
        except ValueError as e:
            raise BackendServerError(f"{op}: invalid JSON response") from e
        if not payload.get("success", False):
            raise BackendServerError(f"{op}: {_error_message(resp)}")
        return payload.get("result")

    # ─────────────────────────────────────────────────────────────
    # 📤 Uploads
    # ─────────────────────────────────────────────────────────────
    async def create_direct_upload(self, *, max_duration_seconds: int) -> DirectUpload:
        result = await self._json(
            "POST",
            "/direct_upload",
            op="direct_upload",
            body={"maxDurationSeconds": int(max_duration_seconds), "requireSignedURLs": True},
        )
        if not isinstance(result, dict) or not result.get("uid") or not result.get("uploadURL"):
            raise BackendServerError("direct_upload: response missing uid/uploadURL")
        return DirectUpload(uid=validate_artifact_id(result["uid"]), upload_url=result["uploadURL"])

    async def create_tus_upload(self, *, file_size: int, filename: str, max_duration_seconds: int) -> TusUpload:
        metadata = ",".join([
            "name " + base64.b64encode(filename.encode("utf-8")).decode("ascii"),
            "maxdurationseconds " + base64.b64encode(str(int(max_duration_seconds)).encode()).decode("ascii"),
            "requiresignedurls",
        ])
        resp = await self._send(
            "POST",
            self._url(""),
            op="tus_create",
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Length": str(int(file_size)),
                "Upload-Metadata": metadata,
            },
        )
        location = resp.headers.get("location")
        if not location:
            raise BackendServerError("tus_create: response missing Location header")
        uid = resp.headers.get("stream-media-id")
        if uid:
            if not _UID_RE.fullmatch(uid):
                raise BackendServerError("tus_create: invalid stream-media-id header")
        else:
            logger.warning("stream-media-id header missing; parsing uid from Location")
            uid = uid_from_tus_url(location)
        return TusUpload(uid=uid, upload_url=location)

    async def upload_tus_chunk(self, upload_url: str, *, offset: int, data: bytes) -> int:
        """PATCH one chunk; returns the new remote offset."""
        resp = await self._send(
            "PATCH",
            upload_url,
            op="tus_patch",
            authenticated=False,
            content=data,
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Offset": str(int(offset)),
                "Content-Type": "application/offset+octet-stream",
            },
        )
        if resp.status_code != 204:
            raise BackendServerError(f"tus_patch: unexpected HTTP {resp.status_code}")
        header = resp.headers.get("upload-offset")
        return int(header) if header is not None else offset + len(data)

    async def tus_offset(self, upload_url: str) -> int:
        resp = await self._send("HEAD", upload_url, op="tus_head", authenticated=False, headers={"Tus-Resumable": TUS_VERSION})
        try:
            return int(resp.headers.get("upload-offset", "0"))
        except ValueError as e:
            raise BackendServerError("tus_head: invalid Upload-Offset header") from e

    async def post_direct_upload(self, upload_url: str, *, filename: str, data: bytes, mime_type: str) -> None:
        """Send the whole file to a one-shot upload URL as ``multipart/form-data``."""
        await self._send(
            "POST",
            upload_url,
            op="direct_post",
            authenticated=False,
            files={"file": (filename, data, mime_type)},
        )

    # ─────────────────────────────────────────────────────────────
    # 🎬 Videos
    # ─────────────────────────────────────────────────────────────
    async def get_video(self, uid: str) -> Dict[str, Any]:
        result = await self._json("GET", f"/{validate_artifact_id(uid)}", op="get_video")
        if not isinstance(result, dict):
            raise BackendServerError("get_video: empty result")
        return result

    async def delete_video(self, uid: str) -> bool:
        await self._json("DELETE", f"/{validate_artifact_id(uid)}", op="delete_video")
        return True

    async def require_signed_urls(self, uid: str) -> None:
        await self._json("POST", f"/{validate_artifact_id(uid)}", op="update_video", body={"requireSignedURLs": True})


__all__ = [
    "StreamApiClient",
    "DirectUpload",
    "TusUpload",
    "map_http_error",
    "uid_from_tus_url",
    "TUS_VERSION",
]
