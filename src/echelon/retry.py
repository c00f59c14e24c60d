"""Exponential backoff and rate-limit cooldown for chain and store calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from echelon.errors import TransientError, is_rate_limit_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE: tuple[type[BaseException], ...] = (TransientError, ConnectionError, TimeoutError)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): ``base * 2**attempt``, capped."""
    return min(base_delay * (2**attempt), max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE,
    on_retry: Callable[[int, BaseException], None] | None = None,
    label: str = "call",
) -> T:
    """
    Await ``fn()`` and retry transient failures with exponential backoff.

    Args:
        fn: Zero-argument coroutine factory, called once per attempt
        max_retries: Retries after the first attempt
        base_delay: Seconds before the first retry
        max_delay: Upper bound on any single delay
        retry_on: Exception types considered transient
        on_retry: Called with (attempt, error) before each sleep
        label: Name used in log messages

    Returns:
        The first successful result.

    Raises:
        The last error once retries are exhausted, or any non-retryable error
        immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error("%s failed after %d attempts: %s", label, attempt + 1, e)
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt + 1,
                max_retries + 1,
                delay,
                e,
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)
            await asyncio.sleep(delay)
            attempt += 1


async def with_rate_limit_cooldown(
    fn: Callable[[], Awaitable[T]],
    *,
    cooldown: float = 10.0,
    label: str = "call",
) -> T:
    """Await ``fn()``; on a rate-limit rejection wait ``cooldown`` and try exactly once more."""
    try:
        return await fn()
    except Exception as e:
        if not is_rate_limit_error(e):
            raise
        logger.warning("%s rate limited, cooling down %.1fs before one retry", label, cooldown)
        await asyncio.sleep(cooldown)
    return await fn()
