# tests/conftest.py
"""
Global test bootstrap
- anyio (asyncio backend) for async tests and fixtures
- In-memory SQLite store (aiosqlite) per test
- Mock Redis mounted into a `RedisClient`
- Fake backend, fake clock and recording sleeper so nothing waits on wall time
"""

from __future__ import annotations

import warnings

import pytest
from sqlalchemy.exc import SAWarning

warnings.filterwarnings("ignore", category=SAWarning)

# ──────────────────────────────────────────────────────────────────────────────
# 📦 Fixtures
# ──────────────────────────────────────────────────────────────────────────────
from tests.fixtures.settings import *      # noqa: F401,F403
from tests.fixtures.keys import *          # noqa: F401,F403
from tests.fixtures.clock import *         # noqa: F401,F403
from tests.fixtures.db import *            # noqa: F401,F403
from tests.fixtures.mocks.redis import *   # noqa: F401,F403
from tests.fixtures.mocks.backend import * # noqa: F401,F403
from tests.fixtures.services import *      # noqa: F401,F403
from tests.fixtures.app import *           # noqa: F401,F403


@pytest.fixture(scope="session", autouse=True)
def anyio_backend():
    return "asyncio"
