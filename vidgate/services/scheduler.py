from __future__ import annotations

"""
Vidgate — periodic reaper job (APScheduler)
------------------------------------------
- Runs `Reaper.run_scheduled_cleanup` on an interval with jitter
- `max_instances=1` + `coalesce=True` so a slow tick never stacks up
- Overlapping ticks across replicas are safe: the reaper claims each session
  with a compare-and-set and treats remote NotFound as done
"""

import logging
from datetime import timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vidgate.core.config import Settings
from vidgate.core.exceptions import AppException
from vidgate.services.container import Services

logger = logging.getLogger("vidgate.reaper")

JOB_ID = "vidgate_reaper"


async def run_reaper_tick(services: Services) -> None:
    try:
        await services.reaper.run_scheduled_cleanup()
    except AppException as e:
        # NotConfigured backends and exhausted transient errors: try next tick
        logger.warning("reaper tick skipped: %s (%s)", e.code, e.message)


def start_reaper_scheduler(services: Services, settings: Settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.add_job(
        run_reaper_tick,
        IntervalTrigger(
            minutes=settings.REAPER_INTERVAL_MINUTES,
            jitter=settings.REAPER_JITTER_SECONDS,
            timezone=timezone.utc,
        ),
        args=[services],
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        "Reaper scheduler started | interval=%sm, jitter=%ss",
        settings.REAPER_INTERVAL_MINUTES, settings.REAPER_JITTER_SECONDS,
    )
    return scheduler


__all__ = ["start_reaper_scheduler", "run_reaper_tick", "JOB_ID"]
