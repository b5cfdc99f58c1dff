from __future__ import annotations

"""
Vidgate • Uploads
=================

Route Index
-----------
- POST   /uploads/sessions                → reserve an upload slot (idempotent per key)
- HEAD   /uploads/sessions/{id}           → resume offset (TUS-style headers, no body)
- GET    /uploads/sessions/{id}           → session state + resume offset
- PATCH  /uploads/sessions/{id}           → one chunk at `Upload-Offset`
- POST   /uploads/sessions/{id}/confirm   → reconcile with the backend, return the record
- DELETE /uploads/sessions/{id}           → release an unfinished session (idempotent)

Notes
-----
- Responses that carry upload endpoints are **no-store**.
- The final chunk schedules a background confirm so the record exists even if
  the client never calls `/confirm`; calling it anyway is harmless.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response, status

from vidgate.api.deps import get_request_context, get_services
from vidgate.api.http_utils import NO_STORE_HEADERS, json_no_store
from vidgate.core.exceptions import AppException, SessionNotFound
from vidgate.db.models import UploadSession
from vidgate.schemas.videos import (
    ChunkAcceptedOut,
    CreateUploadSessionInput,
    UploadSessionOut,
    VideoRecordOut,
)
from vidgate.services.access import RequestContext
from vidgate.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/uploads", tags=["Uploads"])
__all__ = ["router"]

TUS_VERSION = "1.0.0"


def _offset_headers(upload: UploadSession) -> dict:
    return {
        **NO_STORE_HEADERS,
        "Upload-Offset": str(upload.bytes_confirmed),
        "Upload-Length": str(upload.expected_size),
        "Tus-Resumable": TUS_VERSION,
    }


def _session_out(request: Request, services: Services, upload: UploadSession) -> UploadSessionOut:
    return UploadSessionOut(
        **services.uploads.describe(upload),
        upload_endpoint=str(request.url_for("upload_chunk", session_id=str(upload.id))),
    )


async def _confirm_in_background(services: Services, session_id: UUID) -> None:
    try:
        record = await services.reconciler.confirm_upload(session_id)
        logger.info("background confirm of %s: %s", session_id, record.status.value)
    except AppException as e:
        # The client-driven /confirm (or the next playback re-check) picks it up
        logger.warning("background confirm of %s failed: %s", session_id, e.code)


# ─────────────────────────────────────────────────────────────────────────────
# 🆕 Create
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions", status_code=status.HTTP_201_CREATED, summary="Reserve an upload slot")
async def create_upload_session(
    payload: CreateUploadSessionInput,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    upload = await services.uploads.create_session(
        ctx,
        payload.assignment_id,
        payload.file_size,
        payload.mime_type,
        submission_id=payload.submission_id,
        filename=payload.filename,
        idempotency_key=idempotency_key or payload.idempotency_key,
    )
    return json_no_store(_session_out(request, services, upload), status_code=status.HTTP_201_CREATED)


# ─────────────────────────────────────────────────────────────────────────────
# 🔁 Resume offset
# ─────────────────────────────────────────────────────────────────────────────
@router.head("/sessions/{session_id}", summary="Resume offset (headers only)")
async def head_upload_session(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    await services.uploads.get_owned_session(ctx, session_id)
    upload = await services.transport.current_offset(session_id)
    return Response(status_code=status.HTTP_200_OK, headers=_offset_headers(upload))


@router.get("/sessions/{session_id}", summary="Session state and resume offset")
async def get_upload_session(
    session_id: UUID,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    upload = await services.uploads.get_owned_session(ctx, session_id)
    if upload.is_open:
        upload = await services.transport.current_offset(session_id)
    return json_no_store(_session_out(request, services, upload), headers=_offset_headers(upload))


# ─────────────────────────────────────────────────────────────────────────────
# 📥 Chunk
# ─────────────────────────────────────────────────────────────────────────────
@router.patch("/sessions/{session_id}", name="upload_chunk", summary="Upload one chunk")
async def upload_chunk(
    session_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    upload_offset: int = Header(..., alias="Upload-Offset", ge=0),
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    await services.uploads.get_owned_session(ctx, session_id)
    data = await request.body()
    result = await services.transport.accept_chunk(session_id, upload_offset, data)
    if result.completed:
        background_tasks.add_task(_confirm_in_background, services, session_id)
    body = ChunkAcceptedOut(
        session_id=str(session_id),
        bytes_confirmed=result.bytes_confirmed,
        completed=result.completed,
        status=result.session.status.value,
    )
    return json_no_store(body, headers=_offset_headers(result.session))


# ─────────────────────────────────────────────────────────────────────────────
# ✅ Confirm
# ─────────────────────────────────────────────────────────────────────────────
@router.post("/sessions/{session_id}/confirm", summary="Confirm upload and reconcile status")
async def confirm_upload(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    await services.uploads.get_owned_session(ctx, session_id)
    record = await services.reconciler.confirm_upload(session_id)
    return json_no_store(VideoRecordOut.from_record(record))


# ─────────────────────────────────────────────────────────────────────────────
# 🧹 Cleanup
# ─────────────────────────────────────────────────────────────────────────────
@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Release an upload session")
async def cleanup_upload_session(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    try:
        await services.uploads.get_owned_session(ctx, session_id)
    except SessionNotFound:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    await services.reaper.release_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
