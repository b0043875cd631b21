"""Bounded exponential-backoff retry for async operations."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.services.idex_errors import NON_RETRYABLE, RateLimited, RetryExhausted

T = TypeVar("T")

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    description: str,
    sleep: Sleep = asyncio.sleep,
    no_retry: tuple[type[BaseException], ...] = NON_RETRYABLE,
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times.

    Errors listed in ``no_retry`` propagate on the first occurrence without
    any delay. Every other exception waits ``base_delay * 2**attempt`` seconds
    (attempt counted from 0) before the next try. When the attempts run out,
    RetryExhausted is raised, naming ``description`` and chained to the last
    error.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None
    for attempt in range(max_attempts):
        try:
            result = await operation()
            if attempt > 0:
                logger.info("%s succeeded on attempt %d", description, attempt + 1)
            return result
        except no_retry:
            raise
        except Exception as exc:
            last_error = exc
            if attempt + 1 >= max_attempts:
                break
            delay = base_delay * (2 ** attempt)
            kind = "rate limited" if isinstance(exc, RateLimited) else "error"
            logger.warning(
                "%s failed (%s, attempt %d/%d): %s; retrying in %.1fs",
                description, kind, attempt + 1, max_attempts, exc, delay,
            )
            await sleep(delay)

    logger.error("%s: all %d attempts exhausted", description, max_attempts)
    raise RetryExhausted(description, max_attempts, last_error) from last_error
