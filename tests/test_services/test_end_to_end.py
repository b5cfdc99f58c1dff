# tests/test_services/test_end_to_end.py
"""
Whole-lifecycle scenarios through the service layer: reserve → upload →
confirm → grant → cleanup, against the in-memory backend.
"""

import pytest

from vidgate.core.config import MiB
from vidgate.core.exceptions import AccessDenied
from vidgate.db.models import SessionStatus, TransportKind, VideoStatus
from tests.fixtures.services import CDN_DOMAIN, ctx_for, principal

STUDENT = principal(1, "submit:5")
GRADER = principal(2, "grade:5")


@pytest.mark.anyio
async def test_small_video_direct_upload(services, fake_backend):
    ctx = ctx_for(STUDENT, services.store)
    upload = await services.uploads.create_session(
        ctx, 5, 10 * MiB, "video/mp4", submission_id=10, filename="talk.mp4"
    )
    assert upload.transport_kind is TransportKind.DIRECT

    # the browser PUTs the file straight to the returned endpoint
    fake_backend.received[upload.artifact_id] = 10 * MiB

    record = await services.reconciler.confirm_upload(upload.id)
    assert record.status is VideoStatus.READY
    assert record.file_size == 10 * MiB

    grant = await services.playback.issue_grant(ctx_for(GRADER, services.store), 10)
    assert grant.url.startswith(f"https://{CDN_DOMAIN}/videos/{upload.artifact_id}?Expires=")

    # nothing left for the reaper
    summary = await services.reaper.sweep()
    assert summary.scanned == 0


@pytest.mark.anyio
async def test_large_video_in_fifty_mib_chunks(services, fake_backend, clock):
    ctx = ctx_for(STUDENT, services.store)
    size = 500 * MiB
    upload = await services.uploads.create_session(ctx, 5, size, "video/mp4", submission_id=10, filename="lecture.mov")
    assert upload.transport_kind is TransportKind.CHUNKED
    chunk_size = services.uploads.describe(upload)["chunk_size"]
    assert chunk_size == 50 * MiB

    # one buffer reused for every chunk; the fake backend only counts bytes
    buffer = bytes(chunk_size)
    offset = 0
    while offset < size:
        result = await services.transport.accept_chunk(upload.id, offset, buffer)
        offset = result.bytes_confirmed
        clock.advance(30)
    assert fake_backend.calls["upload_chunk"] == 10
    assert result.completed
    assert result.session.status is SessionStatus.COMPLETED

    record = await services.reconciler.confirm_upload(upload.id)
    assert record.status is VideoStatus.READY
    assert record.file_size == size

    grant = await services.playback.issue_grant(ctx, 10, ttl_seconds=600)
    assert grant.expires_at - int(clock().timestamp()) == 600


@pytest.mark.anyio
async def test_interrupted_upload_resumes_then_abandoned_one_is_reaped(services, fake_backend, clock):
    ctx = ctx_for(STUDENT, services.store)
    upload = await services.uploads.create_session(ctx, 5, 300 * MiB, "video/mp4", submission_id=10, filename="a.mp4")
    chunk = bytes(50 * MiB)
    await services.transport.accept_chunk(upload.id, 0, chunk)
    await services.transport.accept_chunk(upload.id, 50 * MiB, chunk)

    # client comes back and asks where to continue
    resumed = await services.transport.current_offset(upload.id)
    assert resumed.bytes_confirmed == 100 * MiB

    # ...then disappears past the deadline
    clock.advance(2 * 3600)
    summary = await services.reaper.sweep()
    assert summary.deleted == 1
    assert (await services.store.get_session(upload.id)).status is SessionStatus.DELETED
    assert fake_backend.deleted == [upload.artifact_id]

    with pytest.raises(AccessDenied) as exc:
        await services.playback.issue_grant(ctx, 10)
    assert exc.value.reason == "not_found"
