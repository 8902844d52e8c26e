"""
Retry combinator used where the cluster needs time to converge on its own,
e.g. a replica that cannot see its new primary until gossip catches up.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[Exception], bool],
        attempts: int = 10,
        delay: float = 1.0,
        description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine factory
        should_retry: Predicate deciding whether a raised error is transient.
            Errors it rejects propagate immediately.
        attempts: Maximum number of calls
        delay: Seconds to sleep between calls
        description: Used in log lines and the final error

    Returns:
        Whatever ``operation`` returns on its first success

    Raises:
        RetryExhaustedError: every attempt failed with a transient error
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not should_retry(exc):
                raise
            last_error = exc
            logger.debug(f"{description} attempt {attempt}/{attempts} failed: {exc}")
            if attempt < attempts:
                await asyncio.sleep(delay)

    raise RetryExhaustedError(
        f"{description} failed after {attempts} attempts: {last_error}",
        last_error=last_error,
    )
