"""
Retry-with-backoff helper shared by every provider and analyzer call.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepCallable = Callable[[float], Awaitable[None]]

RETRYABLE_MARKERS = (
    "rate limit",
    "rate-limit",
    "resource exhausted",
    "overloaded",
    "unavailable",
    "timed out",
    "timeout",
    "429",
    "503",
)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (rate limit, overload, unavailability, timeout)"""
    if isinstance(error, asyncio.TimeoutError):
        return True

    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        return bool(retryable)

    status = getattr(error, "status", None) or getattr(error, "code", None)
    if status in (429, 503):
        return True

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def calculate_backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before the retry that follows 0-indexed attempt ``attempt``"""
    return base_delay * (2 ** attempt)


async def retry_with_backoff(fn: Callable[[], Awaitable[T]],
                             max_retries: int = 3,
                             base_delay: float = 1.0,
                             *,
                             sleep: Optional[SleepCallable] = None,
                             label: str = "operation") -> T:
    """
    Call ``fn`` up to ``max_retries`` times.

    Only errors classified by ``is_retryable_error`` are retried; anything else
    propagates immediately. The delay after attempt k is ``base_delay * 2**k``.
    Cancellation is never retried since ``asyncio.CancelledError`` is not an
    ``Exception``.
    """
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")

    sleep = sleep or asyncio.sleep

    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as e:
            if not is_retryable_error(e):
                logger.debug(f"{label} failed with non-retryable error: {e}")
                raise
            if attempt == max_retries - 1:
                logger.warning(f"{label} failed after {max_retries} attempts: {e}")
                raise

            delay = calculate_backoff_delay(attempt, base_delay)
            logger.warning(
                f"{label} attempt {attempt + 1}/{max_retries} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise RuntimeError("unreachable")
