"""
Retry utilities for directory operations.

Every remote call (connect, list, lookup, create, update) goes through
:func:`retry_call`, which attempts the operation a bounded number of times
with a linearly growing delay between attempts. The schedule counts the
upcoming attempt, so the first wait is two units (4s, 6s, 8s... by default).
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)

DEFAULT_DELAY_UNIT = 2.0


class MaxRetriesExceeded(Exception):
    """Raised when an operation fails on every allowed attempt."""

    def __init__(self, operation_name: str, attempts: int, last_exception: Exception):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"{operation_name} failed after {attempts} attempt(s): {last_exception}")


def backoff_delay(attempt: int, delay_unit: float = DEFAULT_DELAY_UNIT) -> float:
    """
    Seconds to wait after the given failed attempt.

    The wait is scaled by the number of the attempt about to run, so with the
    default unit failed attempt 1 waits 4s, attempt 2 waits 6s, and so on.
    """
    return delay_unit * (attempt + 1)


def retry_call(
    operation: Callable[[], Any],
    operation_name: str,
    max_attempts: int = 3,
    delay_unit: float = DEFAULT_DELAY_UNIT,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call an operation with retry logic.

    Args:
        operation: Zero-argument callable performing the remote work
        operation_name: Label used in logs and in the final error
        max_attempts: Maximum number of attempts, including the first
        delay_unit: Delay multiplier; failed attempt ``n`` waits
            ``delay_unit * (n + 1)``
        exceptions: Exception types that trigger a retry
        on_retry: Optional callback invoked as ``on_retry(attempt, exc)``

    Returns:
        The operation's result

    Raises:
        ValueError: If max_attempts is less than 1
        MaxRetriesExceeded: If all attempts fail
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
            if attempt > 1:
                logger.info(f"{operation_name} succeeded on attempt {attempt}")
            return result

        except exceptions as e:
            last_exception = e

            if attempt == max_attempts:
                break

            delay = backoff_delay(attempt, delay_unit)
            logger.debug(f"{operation_name} attempt {attempt}/{max_attempts} failed with "
                         f"{type(e).__name__}: {e}")
            logger.debug(f"Retrying {operation_name} in {delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(delay)

    raise MaxRetriesExceeded(operation_name, max_attempts, last_exception) from last_exception


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
