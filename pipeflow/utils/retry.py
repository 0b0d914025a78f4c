from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 0.05, jitter: float = 0.05) -> float:
    """Compute exponential backoff with jitter."""
    delay = base * (2**attempt)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt)
    await asyncio.sleep(delay)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]], retries: int = 3
) -> T:
    """Run ``operation`` again after a ``ConflictError``, up to ``retries`` times.

    ``operation`` must re-read whatever state it depends on on every call.
    Any other error, and the final conflict, propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ConflictError as exc:
            if attempt >= retries or not exc.retryable:
                raise
            logger.info(f"Retrying after conflict ({attempt + 1}/{retries}): {exc}")
            await schedule_retry(attempt)
            attempt += 1
