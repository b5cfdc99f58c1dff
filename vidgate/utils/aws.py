# vidgate/utils/aws.py
from __future__ import annotations

"""
🧊 Vidgate • S3 Utilities
=========================

Thin boto3 wrapper used by the S3 storage backend:
- Presigned PUT for direct (single-request) uploads
- Multipart create / upload_part / complete / abort for chunked uploads
- `head` and idempotent `delete`

🎯 Goals
--------
- Explicit timeouts + bounded retries in botocore
- Defensive key normalization (no leading slash, no `..`)
- Pluggable creds (env / role / IRSA) with explicit override if provided
- botocore errors mapped onto the service error taxonomy
- Zero secret leakage in logs (presigned URLs are never logged)
"""

from typing import Any, Dict, List, Optional
import logging
import re

import boto3
import botocore.exceptions
from botocore.config import Config as BotoConfig

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

logger = logging.getLogger(__name__)

# Minimum part size S3 accepts for every part but the last
MIN_PART_SIZE = 5 * 1024 * 1024

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchUpload"}
_THROTTLE_CODES = {"429", "SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequests"}
_AUTH_CODES = {"401", "403", "AccessDenied", "ExpiredToken", "InvalidAccessKeyId", "SignatureDoesNotMatch", "TokenRefreshRequired"}
_FILE_CODES = {"EntityTooSmall", "EntityTooLarge", "InvalidPart", "InvalidPartOrder", "InvalidArgument"}


# ─────────────────────────────────────────────────────────────────────────────
# 🧱 Exceptions
# ─────────────────────────────────────────────────────────────────────────────

class S3StorageError(AppException):
    """Invalid storage key or a storage request we refuse to send."""

    default_code = "storage_error"


def map_client_error(e: Exception, *, op: str) -> AppException:
    """Translate botocore failures into the service taxonomy."""
    if isinstance(e, botocore.exceptions.ClientError):
        err = e.response.get("Error", {}) or {}
        code = str(err.get("Code") or "")
        status = int((e.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode") or 0)
        if code in _NOT_FOUND_CODES or status == 404:
            return ArtifactNotFound(f"S3 object not found during {op}")
        if code in _THROTTLE_CODES or status == 429:
            return BackendRateLimited(f"S3 throttled {op}")
        if code in _AUTH_CODES or status in (401, 403):
            return BackendAuthError(f"S3 rejected credentials during {op}")
        if code in _FILE_CODES:
            return InvalidUpload(f"S3 rejected upload data during {op}: {code}")
        if status >= 500 or code in {"InternalError", "ServiceUnavailable"}:
            return BackendServerError(f"S3 server error during {op}")
        return S3StorageError(f"S3 error during {op}: {code or status}")
    if isinstance(e, (botocore.exceptions.EndpointConnectionError, botocore.exceptions.ConnectTimeoutError,
                      botocore.exceptions.ReadTimeoutError, botocore.exceptions.ConnectionClosedError)):
        return NetworkError(f"S3 network error during {op}")
    return BackendServerError(f"S3 {op} failed: {type(e).__name__}")


# ─────────────────────────────────────────────────────────────────────────────
# 🧰 Key validation
# ─────────────────────────────────────────────────────────────────────────────

# Keep keys strict: readable + safe across tools, CDNs, and logs.
_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@() ]+")

def _normalize_key(key: str) -> str:
    """
    Normalize and validate S3 object keys.

    Steps
    -----
    1) Coerce to str, strip whitespace
    2) Remove leading '/'
    3) Collapse '//' runs
    4) Reject path traversal ('..') and disallowed characters
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise S3StorageError("Invalid storage key: empty")
    if ".." in k:
        raise S3StorageError("Invalid storage key: path traversal detected")
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise S3StorageError("Invalid storage key: contains forbidden characters")
    return k


# ─────────────────────────────────────────────────────────────────────────────
# 📦 S3 Client
# ─────────────────────────────────────────────────────────────────────────────

class S3Client:
    """
    High-level S3 wrapper with safe defaults.

    Parameters
    ----------
    settings : Settings
        Source of bucket, region, endpoint and (optional) static credentials.
    client : botocore client | None
        Pre-built client (tests attach a `Stubber` to it).

    Notes
    -----
    * If `AWS_ACCESS_KEY_ID` + `AWS_SECRET_ACCESS_KEY` are set they are used
      explicitly; otherwise the standard AWS credential chain applies.
    * Bounded retry policy (5 attempts) and short connect timeout fail fast.
    """

    def __init__(self, settings: Settings, *, client: Any = None) -> None:
        self.bucket = settings.AWS_BUCKET_NAME
        if not self.bucket:
            raise NotConfigured("AWS_BUCKET_NAME not configured")
        self.region = settings.AWS_REGION

        if client is None:
            cfg = BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 5, "mode": "standard"},
                connect_timeout=3,
                read_timeout=60,
                s3={"addressing_style": "virtual"},
            )
            client_kwargs: Dict[str, Any] = {"config": cfg, "region_name": settings.AWS_REGION}
            if settings.AWS_S3_ENDPOINT_URL:
                client_kwargs["endpoint_url"] = settings.AWS_S3_ENDPOINT_URL
            sk = settings.AWS_SECRET_ACCESS_KEY
            st = settings.AWS_SESSION_TOKEN
            if settings.AWS_ACCESS_KEY_ID and sk:
                client_kwargs["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID
                client_kwargs["aws_secret_access_key"] = sk.get_secret_value()
                if st:
                    client_kwargs["aws_session_token"] = st.get_secret_value()
            client = boto3.client("s3", **client_kwargs)
        self.client = client

        # Safe, minimal repr (no secrets, no URLs)
        self._repr = f"S3Client(bucket={self.bucket}, region={self.region})"

    # ────────────────────────────────────────────────────────────────────────
    # 🔐 Direct upload
    # ────────────────────────────────────────────────────────────────────────

    def presigned_put(self, key: str, *, content_type: str, expires_in: int = 3600) -> str:
        """
        Generate a **presigned PUT** URL for a direct-to-S3 upload.

        Clients **must** send the same `Content-Type` header.
        """
        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": _normalize_key(key), "ContentType": content_type}
        try:
            return self.client.generate_presigned_url(
                ClientMethod="put_object",
                Params=params,
                ExpiresIn=int(expires_in),
                HttpMethod="PUT",
            )
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise map_client_error(e, op="presign") from e

    def put_bytes(self, key: str, data: bytes, *, content_type: str) -> Optional[str]:
        """Server-side single-request upload; returns the ETag."""
        try:
            resp = self.client.put_object(Bucket=self.bucket, Key=_normalize_key(key), Body=data, ContentType=content_type)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise map_client_error(e, op="put_object") from e
        return resp.get("ETag")

    # ────────────────────────────────────────────────────────────────────────
    # 🧩 Multipart
    # ────────────────────────────────────────────────────────────────────────

    def create_multipart(self, key: str, *, content_type: str) -> str:
        try:
            resp = self.client.create_multipart_upload(Bucket=self.bucket, Key=_normalize_key(key), ContentType=content_type)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise map_client_error(e, op="create_multipart_upload") from e
        return resp["UploadId"]

    def upload_part(self, key: str, *, upload_id: str, part_number: int, data: bytes) -> str:
        try:
            resp = self.client.upload_part(
                Bucket=self.bucket,
                Key=_normalize_key(key),
                UploadId=upload_id,
                PartNumber=int(part_number),
                Body=data,
            )
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise map_client_error(e, op="upload_part") from e
        return resp["ETag"]

    def complete_multipart(self, key: str, *, upload_id: str, parts: List[Dict[str, Any]]) -> None:
        ordered = sorted(({"PartNumber": int(p["PartNumber"]), "ETag": p["ETag"]} for p in parts), key=lambda p: p["PartNumber"])
        try:
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=_normalize_key(key),
                UploadId=upload_id,
                MultipartUpload={"Parts": ordered},
            )
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            raise map_client_error(e, op="complete_multipart_upload") from e

    def abort_multipart(self, key: str, *, upload_id: str) -> bool:
        """Abort an in-flight multipart upload; a missing upload counts as done."""
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=_normalize_key(key), UploadId=upload_id)
            return True
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            mapped = map_client_error(e, op="abort_multipart_upload")
            if isinstance(mapped, ArtifactNotFound):
                return False
            raise mapped from e

    # ────────────────────────────────────────────────────────────────────────
    # 🔎 Metadata / delete
    # ────────────────────────────────────────────────────────────────────────

    def head(self, key: str) -> Optional[Dict[str, Any]]:
        """HEAD the object; None when it does not exist."""
        try:
            return dict(self.client.head_object(Bucket=self.bucket, Key=_normalize_key(key)) or {})
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            mapped = map_client_error(e, op="head_object")
            if isinstance(mapped, ArtifactNotFound):
                return None
            raise mapped from e

    def delete(self, key: str) -> bool:
        """
        Idempotent delete.

        Returns True on success, including "NoSuchKey" (already gone).
        Other failures raise the mapped taxonomy error.
        """
        try:
            self.client.delete_object(Bucket=self.bucket, Key=_normalize_key(key))
            return True
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
            mapped = map_client_error(e, op="delete_object")
            if isinstance(mapped, ArtifactNotFound):
                return True
            raise mapped from e

    def __repr__(self) -> str:  # pragma: no cover
        return self._repr


__all__ = ["S3Client", "S3StorageError", "map_client_error", "MIN_PART_SIZE"]
