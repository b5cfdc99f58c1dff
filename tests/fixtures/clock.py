"""Deterministic time: a settable clock and a sleeper that only records."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

__all__ = ["FakeClock", "RecordingSleeper", "clock", "sleeper", "T0"]

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleeper:
    """Records requested delays; optionally moves a `FakeClock` forward."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeper(clock) -> RecordingSleeper:
    return RecordingSleeper(clock)
