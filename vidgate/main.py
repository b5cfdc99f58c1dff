# vidgate/main.py
from __future__ import annotations

"""
# Vidgate API — Application Entrypoint (FastAPI)

ASGI application factory and lifecycle for the video upload / playback gate.

## Design Goals
- Deterministic, testable **app factory** (`create_app`) with explicit lifespan.
- Settings are built once and injected; services hang off `app.state.services`.
- Middleware order: 1) request id → 2) gzip.
- Centralized exception handling: structured `{kind, code, suggestions, ...}`.
- Graceful local/dev behavior: best-effort Redis, lazy backends (missing
  credentials surface as `NotConfigured` per request, never at import).

## Health checks
- `/healthz` — liveness (process up).
- `/readyz` — readiness (DB + Redis checks).
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from vidgate.api.v1.routers import router as api_v1_router
from vidgate.core.config import Settings, get_settings
from vidgate.core.exception_handlers import (
    app_exception_handler,
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from vidgate.core.exceptions import AppException
from vidgate.core.logger import configure_logging
from vidgate.core.redis_client import RedisClient
from vidgate.db.session import build_engine, build_session_maker, db_healthcheck
from vidgate.middleware.request_id import RequestIDMiddleware
from vidgate.services.container import Services
from vidgate.services.scheduler import start_reaper_scheduler

logger = logging.getLogger("vidgate")


def create_app(settings: Optional[Settings] = None, *, services: Optional[Services] = None) -> FastAPI:
    """
    Build and configure the FastAPI app.

    Passing `services` (tests) skips infrastructure setup in the lifespan:
    no engine, no Redis connect, no scheduler.
    """
    settings = settings or (services.settings if services is not None else get_settings())
    owns_services = services is None

    # ─────────────────────────────────────────────────────────────────────
    # 🔄 Lifespan: startup & shutdown
    # ─────────────────────────────────────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings)
        logger.info("✅ %s starting up (backend=%s)", settings.PROJECT_NAME, settings.STORAGE_BACKEND)

        engine = None
        scheduler = None
        if owns_services:
            redis_wrapper = RedisClient.from_settings(settings)
            try:
                await redis_wrapper.connect()
            except RuntimeError:
                logger.exception("Redis connect failed (continuing in degraded mode)")

            engine = build_engine(settings.ASYNC_DATABASE_URL)
            app.state.engine = engine
            app.state.services = Services(
                settings,
                session_maker=build_session_maker(engine),
                redis=redis_wrapper,
            )
            if settings.REAPER_SCHEDULER_ENABLED:
                scheduler = start_reaper_scheduler(app.state.services, settings)

        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("🛑 Reaper scheduler stopped")
            if owns_services:
                await app.state.services.aclose()
            if engine is not None:
                await engine.dispose()
                logger.info("🛑 Database engine disposed")
            if owns_services:
                await redis_wrapper.close()
            logger.info("🛑 %s shutting down", settings.PROJECT_NAME)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = None
    if services is not None:
        app.state.services = services

    # ── Middlewares (order matters) ─────────────────────────────────────────
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(RequestIDMiddleware)  # outermost: correlation id for everything

    # ── Exception handlers ──────────────────────────────────────────────────
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]

    # ── Routers (versioned API) ─────────────────────────────────────────────
    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    # ── Meta endpoints ──────────────────────────────────────────────────────
    @app.get("/healthz", tags=["meta"])
    async def healthz() -> dict[str, bool]:
        """Liveness check: no external calls."""
        return {"ok": True}

    @app.get("/readyz", tags=["meta"])
    async def readyz() -> dict[str, object]:
        """Readiness check (DB + Redis)."""
        engine = app.state.engine
        db_ok = await db_healthcheck(engine) if engine is not None else True
        svc = getattr(app.state, "services", None)
        redis_ok = bool(svc is not None and await svc.redis.is_connected())
        return {"ready": bool(db_ok and redis_ok), "checks": {"db": db_ok, "redis": redis_ok}}

    return app


# ─────────────────────────────────────────────────────────────────────────────
# 🚀 Module-level ASGI app for Uvicorn (`uvicorn vidgate.main:app`)
# ─────────────────────────────────────────────────────────────────────────────
app = create_app()
