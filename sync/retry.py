"""Retry helper for calls to the ledger backend."""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryDeadlineExceeded(Exception):
    """The overall time ceiling ran out before a call succeeded."""

    def __init__(self, message: str, last_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.last_exception = last_exception


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    retryable_exceptions: tuple = (Exception,),
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Execute a function with exponential backoff retry on transient errors.

    Args:
        func: Callable to execute (no arguments)
        max_retries: Maximum number of retry attempts (default 3)
        initial_delay: Initial delay in seconds between retries (default 1.0)
        max_delay: Maximum delay in seconds (default 10.0)
        backoff_factor: Multiplier for delay after each retry (default 2.0)
        retryable_exceptions: Tuple of exception types to retry on
        timeout: Optional overall ceiling in seconds across all attempts
        sleep: Sleep function (injected in tests)
        clock: Monotonic clock (injected in tests)

    Returns:
        Result from successful function call

    Raises:
        RetryDeadlineExceeded: If the next wait would pass the timeout
        Last exception if all retries fail
    """
    last_exception = None
    delay = initial_delay
    deadline = clock() + timeout if timeout is not None else None

    for attempt in range(max_retries + 1):  # +1 for initial attempt
        try:
            return func()
        except retryable_exceptions as e:
            last_exception = e

            if attempt < max_retries:
                if deadline is not None and clock() + delay > deadline:
                    logger.error(f"Retry deadline of {timeout:.1f}s reached: {e}")
                    raise RetryDeadlineExceeded(
                        f"Gave up after {attempt + 1} attempts: {e}", last_exception=e
                    ) from e
                logger.warning(
                    f"Retry {attempt + 1}/{max_retries} after error: {e}. "
                    f"Waiting {delay:.1f}s..."
                )
                sleep(delay)
                delay = min(delay * backoff_factor, max_delay)
            else:
                logger.error(f"All {max_retries} retries failed: {e}")

    raise last_exception
