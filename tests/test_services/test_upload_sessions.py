# tests/test_services/test_upload_sessions.py
from datetime import timedelta

import pytest

from vidgate.core.config import MiB
from vidgate.core.exceptions import (
    AccessDenied,
    InvalidUpload,
    NetworkError,
    QuotaExceeded,
    RateLimited,
    SessionNotFound,
)
from vidgate.db.models import SessionStatus, TransportKind
from vidgate.services.rate_limit import RateLimiter
from vidgate.services.upload_sessions import UploadSessionManager, idempotency_key_for, select_transport
from vidgate.utils.clock import as_utc
from tests.fixtures.clock import T0
from tests.fixtures.factories import build_upload, make_upload
from tests.fixtures.mocks.redis import make_redis_outage
from tests.fixtures.services import ctx_for, principal
from tests.fixtures.settings import make_settings

STUDENT = principal(1, "submit:5")


async def _create(services, user=STUDENT, *, size=10 * MiB, key=None, submission_id=10, **kw):
    return await services.uploads.create_session(
        ctx_for(user, services.store),
        kw.pop("assignment_id", 5),
        size,
        kw.pop("mime_type", "video/mp4"),
        submission_id=submission_id,
        filename=kw.pop("filename", "talk.mp4"),
        idempotency_key=key,
    )


def test_transport_selection_threshold():
    threshold = 200 * MiB
    assert select_transport(threshold - 1, threshold) is TransportKind.DIRECT
    assert select_transport(threshold, threshold) is TransportKind.CHUNKED


@pytest.mark.anyio
async def test_small_file_gets_direct_session(services, fake_backend):
    upload = await _create(services)

    assert upload.transport_kind is TransportKind.DIRECT
    assert upload.status is SessionStatus.CREATED
    assert upload.bytes_confirmed == 0
    assert upload.artifact_id == "vid0001"
    assert upload.remote_upload_endpoint == "https://upload.example.test/vid0001"
    assert as_utc(upload.deadline) == T0 + timedelta(hours=1)

    stored = await services.store.get_session(upload.id)
    assert stored is not None and stored.owner_id == 1


@pytest.mark.anyio
async def test_large_file_gets_chunked_session(services):
    upload = await _create(services, size=500 * MiB)
    assert upload.transport_kind is TransportKind.CHUNKED
    assert upload.remote_upload_id == "mp-vid0001"
    assert upload.remote_parts == []

    described = services.uploads.describe(upload)
    assert described["chunk_size"] == 50 * MiB
    assert described["direct_upload"] is None
    assert described["transport_kind"] == "chunked"


@pytest.mark.anyio
async def test_validation_runs_before_remote_work(services, fake_backend):
    with pytest.raises(QuotaExceeded):
        await _create(services, size=6 * 1024 * MiB)
    with pytest.raises(InvalidUpload):
        await _create(services, mime_type="application/pdf")
    with pytest.raises(InvalidUpload):
        await _create(services, filename="talk.exe")
    assert fake_backend.calls["reserve"] == 0


@pytest.mark.anyio
async def test_requires_submit_capability(services, fake_backend):
    with pytest.raises(AccessDenied) as exc:
        await _create(services, user=principal(1, "submit:6"))
    assert exc.value.reason == "forbidden"
    assert fake_backend.calls["reserve"] == 0


@pytest.mark.anyio
async def test_idempotency_key_replays_open_session(services, fake_backend, mock_redis):
    first = await _create(services, key="abc")
    second = await _create(services, key="abc")

    assert second.id == first.id
    assert fake_backend.calls["reserve"] == 1
    assert idempotency_key_for(1, "abc") in mock_redis.store


@pytest.mark.anyio
async def test_idempotency_falls_back_to_database(services, fake_backend, mock_redis):
    make_redis_outage(mock_redis)
    first = await _create(services, key="abc")
    second = await _create(services, key="abc")
    assert second.id == first.id
    assert fake_backend.calls["reserve"] == 1


@pytest.mark.anyio
async def test_idempotency_key_is_scoped_per_owner(services):
    mine = await _create(services, key="abc")
    theirs = await _create(services, user=principal(2, "submit:5"), key="abc", submission_id=11)
    assert mine.id != theirs.id


@pytest.mark.anyio
async def test_transient_reserve_failure_is_retried(services, fake_backend, sleeper):
    fake_backend.fail("reserve", NetworkError("reset"))
    upload = await _create(services)
    assert upload.artifact_id == "vid0001"
    assert fake_backend.calls["reserve"] == 2
    assert len(sleeper.delays) == 1


@pytest.mark.anyio
async def test_upload_rate_limit(store, redis_client, fake_backend, clock, sleeper):
    settings = make_settings(UPLOAD_RATE_LIMIT_PER_HOUR=2)
    manager = UploadSessionManager(
        settings=settings,
        store=store,
        backend=fake_backend,
        rate_limiter=RateLimiter.from_settings(settings, redis_client, clock=clock),
        redis=redis_client,
        clock=clock,
        sleep=sleeper,
    )
    ctx = ctx_for(STUDENT, store)
    for n in range(2):
        await manager.create_session(ctx, 5, MiB, "video/mp4", submission_id=10 + n, filename="a.mp4")
    with pytest.raises(RateLimited):
        await manager.create_session(ctx, 5, MiB, "video/mp4", submission_id=20, filename="a.mp4")


@pytest.mark.anyio
async def test_failed_persist_releases_reservation(services, fake_backend, monkeypatch):
    async def boom(upload):
        raise RuntimeError("db down")

    monkeypatch.setattr(services.store, "insert_session", boom)
    with pytest.raises(RuntimeError):
        await _create(services)
    assert fake_backend.deleted == ["vid0001"]


@pytest.mark.anyio
async def test_get_owned_session_hides_foreign_sessions(services):
    upload = await _create(services)
    store = services.store

    assert (await services.uploads.get_owned_session(ctx_for(STUDENT, store), upload.id)).id == upload.id
    assert (await services.uploads.get_owned_session(ctx_for(principal(9, admin=True), store), upload.id)).id == upload.id
    with pytest.raises(SessionNotFound):
        await services.uploads.get_owned_session(ctx_for(principal(2, "submit:5"), store), upload.id)


@pytest.mark.anyio
async def test_overlapping_creates_with_same_key_share_one_session(services, fake_backend, monkeypatch):
    # Both requests look up the key before either has committed
    async def miss(owner_id, key):
        return None

    monkeypatch.setattr(services.uploads, "_replay", miss)
    first = await _create(services, key="k1")
    second = await _create(services, key="k1")

    assert second.id == first.id
    assert second.artifact_id == "vid0001"
    assert fake_backend.calls["reserve"] == 2
    assert fake_backend.deleted == ["vid0002"]



@pytest.mark.anyio
async def test_store_insert_returns_session_holding_the_key(store):
    winner = await make_upload(store, idempotency_key="k1")
    clash = build_upload(artifact_id="vid0002", idempotency_key="k1")

    stored = await store.insert_session(clash)
    assert stored is not clash
    assert stored.id == winner.id

    # keys are per owner; sessions without a key never clash
    other = build_upload(artifact_id="vid0003", owner_id=2, idempotency_key="k1")
    assert await store.insert_session(other) is other
    assert await store.insert_session(build_upload(artifact_id="vid0004")) is not None
    assert await store.insert_session(build_upload(artifact_id="vid0005")) is not None


@pytest.mark.anyio
async def test_key_of_finished_session_still_replays(services, fake_backend):
    first = await _create(services, key="abc")
    await services.store.transition_session(
        first.id, from_statuses=(SessionStatus.CREATED,), to_status=SessionStatus.COMPLETED, now=T0
    )
    again = await _create(services, key="abc")
    assert again.id == first.id
    assert again.status is SessionStatus.COMPLETED
    assert fake_backend.calls["reserve"] == 1
