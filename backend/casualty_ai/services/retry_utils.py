"""Retry utility with exponential backoff and per-attempt timeout for API calls."""
import asyncio
import random
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = (
    "429",
    "500",
    "503",
    "quota",
    "rate",
    "resource",
    "unavailable",
    "deadline",
    "timeout",
    "timed out",
)


def is_transient_error(error: BaseException) -> bool:
    """Errors worth another attempt: rate limits, quota, timeouts, 5xx."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    error_str = str(error).lower()
    return any(marker in error_str for marker in TRANSIENT_MARKERS)


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    timeout: Optional[float] = None,
    base_delay: float = 1.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
) -> Any:
    """Retry async function with exponential backoff.

    Each attempt is bounded by *timeout* seconds when given. A timed-out
    attempt raises asyncio.TimeoutError, which counts as transient.
    """
    for attempt in range(max_retries):
        try:
            if timeout is not None:
                return await asyncio.wait_for(func(), timeout=timeout)
            return await func()
        except Exception as e:
            if attempt < max_retries - 1 and is_retryable(e):
                delay = base_delay * ((2 ** attempt) + random.uniform(0, 1))
                logger.warning(
                    f"Retry {attempt+1}/{max_retries} after {delay:.1f}s: "
                    f"{(str(e) or type(e).__name__)[:100]}"
                )
                await asyncio.sleep(delay)
            else:
                raise
