# tests/test_utils/test_stream_api.py
import json

import httpx
import pytest

from vidgate.core.exceptions import (
    ArtifactNotFound,
    BackendAuthError,
    BackendRateLimited,
    BackendServerError,
    InvalidUpload,
    NetworkError,
    NotConfigured,
)
from vidgate.utils.stream_api import TUS_VERSION, StreamApiClient, uid_from_tus_url

BASE = "https://api.example.test/client/v4"
UPLOAD_URL = "https://upload.example.test/tus/acct/media/abc123?tusv2=true"


def _client(handler) -> StreamApiClient:
    return StreamApiClient(
        base_url=BASE,
        account_id="acct",
        api_token="secret-token",
        transport=httpx.MockTransport(handler),
    )


def _ok(result, status=200):
    return httpx.Response(status, json={"success": True, "errors": [], "result": result})


def test_credentials_required():
    with pytest.raises(NotConfigured):
        StreamApiClient(base_url=BASE, account_id="acct", api_token=None)


# ─────────────────────────────────────────────────────────────────────────────
# 📤 Uploads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_create_direct_upload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return _ok({"uid": "abc123", "uploadURL": "https://upload.example.test/abc123"})

    client = _client(handler)
    direct = await client.create_direct_upload(max_duration_seconds=3600)
    await client.aclose()

    assert direct.uid == "abc123"
    assert direct.upload_url == "https://upload.example.test/abc123"
    assert seen["url"] == f"{BASE}/accounts/acct/stream/direct_upload"
    assert seen["auth"] == "Bearer secret-token"
    assert seen["body"] == {"maxDurationSeconds": 3600, "requireSignedURLs": True}


@pytest.mark.anyio
async def test_create_tus_upload_prefers_media_id_header():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(201, headers={"Location": UPLOAD_URL, "stream-media-id": "abc123"})

    client = _client(handler)
    tus = await client.create_tus_upload(file_size=500, filename="talk.mp4", max_duration_seconds=60)
    await client.aclose()

    assert tus.uid == "abc123" and tus.upload_url == UPLOAD_URL
    assert seen["tus-resumable"] == TUS_VERSION
    assert seen["upload-length"] == "500"
    assert seen["upload-metadata"].startswith("name dGFsay5tcDQ=,")
    assert seen["upload-metadata"].endswith(",requiresignedurls")


@pytest.mark.anyio
async def test_create_tus_upload_falls_back_to_location():
    client = _client(lambda request: httpx.Response(201, headers={"Location": UPLOAD_URL}))
    tus = await client.create_tus_upload(file_size=500, filename="talk.mp4", max_duration_seconds=60)
    await client.aclose()
    assert tus.uid == "abc123"


@pytest.mark.anyio
async def test_tus_create_without_location_fails():
    client = _client(lambda request: httpx.Response(201))
    with pytest.raises(BackendServerError):
        await client.create_tus_upload(file_size=1, filename="a.mp4", max_duration_seconds=60)
    await client.aclose()


def test_uid_from_tus_url():
    assert uid_from_tus_url("https://upload.example.test/tus/media/abc123_") == "abc123"
    with pytest.raises(BackendServerError):
        uid_from_tus_url("https://upload.example.test/tus/abc123")
    with pytest.raises(BackendServerError):
        uid_from_tus_url("https://upload.example.test/media/ab$12")


@pytest.mark.anyio
async def test_tus_patch_is_sent_without_account_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(204, headers={"Upload-Offset": "7"})

    client = _client(handler)
    new_offset = await client.upload_tus_chunk(UPLOAD_URL, offset=4, data=b"abc")
    await client.aclose()

    assert new_offset == 7
    assert seen["method"] == "PATCH"
    assert "authorization" not in seen["headers"]
    assert seen["headers"]["upload-offset"] == "4"
    assert seen["headers"]["content-type"] == "application/offset+octet-stream"
    assert seen["body"] == b"abc"


@pytest.mark.anyio
async def test_tus_patch_requires_204():
    client = _client(lambda request: httpx.Response(200))
    with pytest.raises(BackendServerError):
        await client.upload_tus_chunk(UPLOAD_URL, offset=0, data=b"abc")
    await client.aclose()


@pytest.mark.anyio
async def test_tus_offset():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        assert "authorization" not in request.headers
        return httpx.Response(200, headers={"Upload-Offset": "1024"})

    client = _client(handler)
    assert await client.tus_offset(UPLOAD_URL) == 1024
    await client.aclose()


@pytest.mark.anyio
async def test_direct_post_is_multipart_without_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200)

    client = _client(handler)
    await client.post_direct_upload(
        "https://upload.example.test/abc123", filename="talk.mp4", data=b"video-bytes", mime_type="video/mp4"
    )
    await client.aclose()

    assert seen["headers"]["content-type"].startswith("multipart/form-data")
    assert "authorization" not in seen["headers"]
    assert b'name="file"; filename="talk.mp4"' in seen["body"]
    assert b"video-bytes" in seen["body"]


# ─────────────────────────────────────────────────────────────────────────────
# 🧱 Error mapping
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "status,expected",
    [
        (401, BackendAuthError),
        (403, BackendAuthError),
        (404, ArtifactNotFound),
        (429, BackendRateLimited),
        (500, BackendServerError),
        (503, BackendServerError),
        (400, InvalidUpload),
    ],
)
@pytest.mark.anyio
async def test_http_errors_are_mapped(status, expected):
    client = _client(lambda request: httpx.Response(status, json={"success": False, "errors": [{"message": "nope"}]}))
    with pytest.raises(expected) as exc:
        await client.get_video("abc123")
    await client.aclose()
    assert "nope" in exc.value.message


@pytest.mark.anyio
async def test_rejected_request_code():
    client = _client(lambda request: httpx.Response(413, json={"success": False, "errors": []}))
    with pytest.raises(InvalidUpload) as exc:
        await client.get_video("abc123")
    await client.aclose()
    assert exc.value.code == "backend_rejected"


@pytest.mark.anyio
async def test_transport_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(NetworkError):
        await client.get_video("abc123")
    await client.aclose()


@pytest.mark.anyio
async def test_unsuccessful_envelope_is_server_error():
    client = _client(lambda request: httpx.Response(200, json={"success": False, "errors": [{"message": "odd"}]}))
    with pytest.raises(BackendServerError):
        await client.get_video("abc123")
    await client.aclose()


@pytest.mark.anyio
async def test_invalid_uid_never_reaches_the_wire():
    calls = []
    client = _client(lambda request: calls.append(request) or _ok({}))
    with pytest.raises(InvalidUpload):
        await client.delete_video("../abc")
    await client.aclose()
    assert calls == []


@pytest.mark.anyio
async def test_delete_with_empty_body():
    client = _client(lambda request: httpx.Response(200))
    assert await client.delete_video("abc123") is True
    await client.aclose()
