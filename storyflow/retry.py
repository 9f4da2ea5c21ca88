"""Bounded retry with increasing backoff for generation calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from storyflow.errors import ProviderFailure, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(delay: float, attempt: int, timed_out: bool) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based).

    Grows linearly with the attempt; timeouts back off twice as hard.
    """
    wait = delay * attempt
    return wait * 2 if timed_out else wait


async def retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 2.0,
    label: str = "call",
) -> T:
    """Await ``fn()`` up to ``attempts`` times.

    Only transient ProviderFailures are retried; anything else propagates
    immediately. When every attempt fails the last error is re-raised.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except ProviderFailure as e:
            if not e.transient or attempt == attempts:
                raise
            wait = backoff_delay(delay, attempt, isinstance(e, ProviderTimeout))
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                label, attempt, attempts, e, wait,
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")
