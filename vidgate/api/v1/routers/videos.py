from __future__ import annotations

"""
Vidgate • Videos
================

- DELETE /videos/{submission_id} → owner/admin removal: remote hard delete,
  local soft delete (status ``deleted``).
"""

from fastapi import APIRouter, Depends, Path

from vidgate.api.deps import get_request_context, get_services
from vidgate.api.http_utils import json_no_store
from vidgate.schemas.videos import VideoRecordOut
from vidgate.services.access import RequestContext
from vidgate.services.container import Services

router = APIRouter(prefix="/videos", tags=["Videos"])
__all__ = ["router"]


@router.delete("/{submission_id}", summary="Remove a submission's video")
async def remove_video(
    submission_id: int = Path(..., ge=1),
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
):
    record = await services.reaper.remove_video(ctx, submission_id)
    return json_no_store(VideoRecordOut.from_record(record))
