# tests/test_services/test_retry.py
import random

import pytest

from vidgate.core.exceptions import (
    AccessDenied,
    BackendAuthError,
    BackendRateLimited,
    BackendServerError,
    InvalidUpload,
    NetworkError,
    NotConfigured,
)
from vidgate.services.retry import (
    ErrorClass,
    RetryPolicy,
    classify,
    compute_delay,
    jittered_delay,
    retry_async,
)
from tests.fixtures.clock import RecordingSleeper
from tests.fixtures.settings import make_settings


POLICY = RetryPolicy(max_attempts=5, base_delay=1.0, multiplier=2.0, max_delay=30.0, jitter_ratio=0.1)


def test_delay_sequence():
    assert [compute_delay(POLICY, n) for n in range(1, 6)] == [1, 2, 4, 8, 16]


def test_delay_is_capped():
    assert compute_delay(POLICY, 6) == 30
    assert compute_delay(POLICY, 12) == 30


def test_attempt_is_one_based():
    with pytest.raises(ValueError):
        compute_delay(POLICY, 0)


@pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
def test_jitter_is_added_and_bounded(attempt):
    rng = random.Random(attempt)
    base = compute_delay(POLICY, attempt)
    for _ in range(50):
        d = jittered_delay(POLICY, attempt, rng)
        assert base <= d <= base * 1.1


def test_policy_from_settings():
    s = make_settings()
    assert RetryPolicy.from_settings(s).max_attempts == 3
    assert RetryPolicy.from_settings(s, chunk=True).max_attempts == 5


@pytest.mark.parametrize(
    "exc,expected",
    [
        (NetworkError("x"), ErrorClass.TRANSIENT),
        (BackendServerError("x"), ErrorClass.TRANSIENT),
        (BackendRateLimited("x"), ErrorClass.TRANSIENT),
        (BackendAuthError("x"), ErrorClass.TRANSIENT),
        (InvalidUpload("x"), ErrorClass.PERMANENT),
        (AccessDenied(reason="forbidden"), ErrorClass.PERMANENT),
        (NotConfigured("x"), ErrorClass.PERMANENT),
        (ValueError("x"), ErrorClass.PERMANENT),
    ],
)
def test_classify(exc, expected):
    assert classify(exc) is expected


@pytest.mark.anyio
async def test_transient_errors_are_retried_with_backoff():
    sleeper = RecordingSleeper()
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        if calls["n"] < 3:
            raise BackendServerError("503")
        return "ok"

    policy = RetryPolicy(max_attempts=5, jitter_ratio=0.0)
    assert await retry_async(op, policy=policy, sleep=sleeper) == "ok"
    assert calls["n"] == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_permanent_error_is_not_retried():
    sleeper = RecordingSleeper()
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise InvalidUpload("bad file")

    with pytest.raises(InvalidUpload):
        await retry_async(op, policy=POLICY, sleep=sleeper)
    assert calls["n"] == 1
    assert sleeper.delays == []


@pytest.mark.anyio
async def test_exhaustion_marks_error():
    sleeper = RecordingSleeper()

    async def op():
        raise NetworkError("down")

    with pytest.raises(NetworkError) as exc:
        await retry_async(op, policy=POLICY, sleep=sleeper, rng=random.Random(0))
    assert exc.value.retries_exhausted is True
    assert exc.value.to_problem()["retries_exhausted"] is True
    assert len(sleeper.delays) == 4
    for attempt, d in enumerate(sleeper.delays, start=1):
        base = compute_delay(POLICY, attempt)
        assert base <= d <= base * 1.1
