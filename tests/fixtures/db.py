"""
DB fixtures for tests (async, in-memory SQLite via aiosqlite):
- One StaticPool connection per test, so the in-memory database survives
  across sessions
- Tables created from the ORM metadata
"""

import pytest

from vidgate.db.session import build_engine, build_session_maker, create_all
from vidgate.repositories.videos import VideoStore

__all__ = ["engine", "session_maker", "store"]


@pytest.fixture()
async def engine():
    eng = build_engine("sqlite+aiosqlite://")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture()
def store(session_maker) -> VideoStore:
    return VideoStore(session_maker)
