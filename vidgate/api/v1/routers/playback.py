from __future__ import annotations

"""
Vidgate • Playback grants
=========================

- POST /playback/grants → short-lived signed URL (CloudFront canned policy) or
  signed playback token for a ready video the caller may watch.

Every request re-runs the access decision; grants are **no-store** and are
never logged.
"""

import logging

from fastapi import APIRouter, Depends

from vidgate.api.deps import get_request_context, get_services
from vidgate.api.http_utils import build_content_disposition, json_no_store
from vidgate.schemas.videos import PlaybackGrantInput
from vidgate.services.access import RequestContext
from vidgate.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/playback", tags=["Playback"])
__all__ = ["router"]


@router.post("/grants", summary="Issue a playback grant")
async def issue_playback_grant(
    payload: PlaybackGrantInput,
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    grant = await services.playback.issue_grant(
        ctx,
        payload.submission_id,
        artifact_id=payload.artifact_id,
        ttl_seconds=payload.ttl_seconds,
        response_content_disposition=build_content_disposition(payload.download_filename),
    )
    return json_no_store(grant)
