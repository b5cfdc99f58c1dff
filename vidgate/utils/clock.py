"""Injectable time sources (wall clock + async sleep) and UTC helpers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def real_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch(value: datetime) -> int:
    return int(value.timestamp())


__all__ = ["Clock", "Sleeper", "utcnow", "real_sleep", "as_utc", "epoch"]
