"""
🧭 Vidgate • API v1 Router Aggregator
====================================

Quick usage
-----------
    from vidgate.api.v1.routers import router as v1_router
    app.include_router(v1_router, prefix=settings.API_V1_STR)

Auth and rate limits live in the child routers / services; this is a pure
aggregator.
"""

from fastapi import APIRouter

from .playback import router as playback_router
from .uploads import router as uploads_router
from .videos import router as videos_router


def build_v1_router() -> APIRouter:
    """Compose the v1 surface: uploads, playback grants, video removal."""
    router = APIRouter()
    router.include_router(uploads_router)
    router.include_router(playback_router)
    router.include_router(videos_router)
    return router


router = build_v1_router()

__all__ = ["router", "build_v1_router", "uploads_router", "playback_router", "videos_router"]
