"""Error types and retry helper."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContextKeeperError(Exception):
    """Base class for context-keeper errors."""


class ContextDataError(ContextKeeperError, ValueError):
    """Caller-supplied message data breaks the input contract."""


class SearchError(ContextKeeperError):
    """The message search capability failed."""


async def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = 1,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
) -> Any:
    """
    Retry a coroutine function with exponential backoff.

    Args:
        func: Async function to retry
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay on each retry

    Returns:
        Result of func()

    Raises:
        Last exception if all retries fail
    """
    last_exception = None
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            last_exception = e
            if attempt < max_retries:
                logger.warning(
                    f"Search call failed (attempt {attempt + 1}/{max_retries + 1}): {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= backoff_factor
            else:
                logger.error(f"Search call failed after {max_retries + 1} attempts: {e}")

    raise last_exception
