from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..exceptions import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base: float = 1.5,
    jitter: float = 0.5,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Configuration errors and policy violations are raised immediately.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_attempts:
                raise
            delay = compute_backoff(attempt, base=base, jitter=jitter)
            logger.warning(f"Attempt {attempt} failed: {e}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1
