from __future__ import annotations

"""
Retry / backoff controller.

- `classify(exc)` → transient (retry) or permanent (surface now)
- `compute_delay(policy, attempt)` → ``min(base * multiplier**(attempt-1), max)``
- `jittered_delay(policy, attempt, rng)` → delay + uniform jitter in ``[0, ratio * delay]``
  (added, never subtracted)
- `retry_async(op, policy=..., sleep=..., rng=...)` wraps any remote call; on
  exhaustion the last error is re-raised with ``retries_exhausted = True``.

Sleep and randomness are injected so tests run without wall-clock delays.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from vidgate.core.config import Settings
from vidgate.core.exceptions import AppException, ErrorKind
from vidgate.utils.clock import Sleeper, real_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings, *, chunk: bool = False) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_CHUNK_MAX_ATTEMPTS if chunk else settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter_ratio=settings.RETRY_JITTER_RATIO,
        )


def classify(exc: BaseException) -> ErrorClass:
    """
    Transient: network errors, 5xx, 429, auth expiry (`ErrorKind.TRANSIENT`).
    Everything else (file errors, identity mismatch, forbidden, config,
    not found, unknown exceptions) is permanent.
    """
    if isinstance(exc, AppException) and exc.kind is ErrorKind.TRANSIENT:
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Pre-jitter delay in seconds for the given 1-based attempt."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(policy.base_delay * (policy.multiplier ** (attempt - 1)), policy.max_delay)


def jittered_delay(policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None) -> float:
    delay = compute_delay(policy, attempt)
    r = (rng or random).random()
    return delay + delay * policy.jitter_ratio * r


async def retry_async(
    op: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    sleep: Sleeper = real_sleep,
    rng: Optional[random.Random] = None,
    label: str = "remote call",
) -> T:
    """
    Run `op` until it succeeds, fails permanently, or the attempt budget runs out.

    Steps
    -----
    1) Call `op`.
    2) Permanent errors propagate immediately.
    3) Transient errors sleep the jittered delay for this attempt, then retry.
    4) On the last attempt the error is marked `retries_exhausted` and re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await op()
        except AppException as e:
            if classify(e) is ErrorClass.PERMANENT:
                raise
            if attempt >= policy.max_attempts:
                e.retries_exhausted = True
                logger.warning("%s failed after %s attempts: %s", label, attempt, e.code)
                raise
            delay = jittered_delay(policy, attempt, rng)
            logger.info(
                "%s attempt %s/%s failed (%s); retrying in %.2fs",
                label, attempt, policy.max_attempts, e.code, delay,
            )
            await sleep(delay)


__all__ = [
    "ErrorClass",
    "RetryPolicy",
    "classify",
    "compute_delay",
    "jittered_delay",
    "retry_async",
]
