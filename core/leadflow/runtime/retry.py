"""Exponential backoff for side effects and AI calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from leadflow.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, Exception], Awaitable[None]]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[Exception], ...],
    describe: str,
    on_retry: RetryCallback | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or ``policy.max_attempts`` is spent.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised
    once attempts run out. Anything else propagates immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{describe} failed after {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{describe} failed (attempt {attempt}/{policy.max_attempts}): {e}. "
                f"Retrying in {delay}s...",
                extra={"attempt": attempt},
            )
            if on_retry is not None:
                await on_retry(attempt, e)
            await asyncio.sleep(delay)
