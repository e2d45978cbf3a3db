"""
Bounded retry with a fixed delay for asynchronous operations.
"""

import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


async def retry_async(operation: Callable[[], Awaitable[T]],
                      attempts: int,
                      delay: float,
                      retry_on: Tuple[Type[BaseException], ...] = (Exception, ),
                      description: str = 'operation') -> T:
    """
    Run an async operation, retrying on the given exception types.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        attempts: Total number of attempts (at least 1)
        delay: Seconds to sleep between attempts
        retry_on: Exception types considered transient; anything else propagates immediately
        description: Label used in log messages

    Returns:
        The operation's result

    Raises:
        The last transient exception once all attempts are exhausted
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                logger.error(f'{description} failed after {attempts} attempts: {e}')
                raise
            logger.warning(f'{description} attempt {attempt}/{attempts} failed: {e}')
            await asyncio.sleep(delay)
