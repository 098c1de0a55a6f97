"""
Retry utility with exponential backoff for Google API calls.
Handles transient errors (rate limits, 5xx, timeouts) with retry,
and fails immediately on permanent errors (other 4xx).
"""

import random
import time
import logging
from typing import Callable, TypeVar, Optional, Type, Tuple
from functools import wraps

from googleapiclient.errors import HttpError

logger = logging.getLogger("drive_mirror.retry")

T = TypeVar('T')

# Drive reports per-user rate limiting as 403 as well as 429
TRANSIENT_STATUS_CODES = (403, 429, 500, 502, 503, 504)


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


def http_status_of(error: BaseException) -> Optional[int]:
    """Extract the HTTP status from a googleapiclient HttpError, if there is one."""
    if isinstance(error, HttpError):
        try:
            return int(error.resp.status)
        except (AttributeError, TypeError, ValueError):
            return None
    return getattr(error, "status_code", None)


def exponential_backoff_retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 32.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    transient_error_codes: Tuple[int, ...] = TRANSIENT_STATUS_CODES,
    retriable_exceptions: Tuple[Type[Exception], ...] = (ConnectionError, TimeoutError),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 32.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        jitter: Add up to one second of random jitter to each delay
        transient_error_codes: HTTP status codes to retry (default: 403, 429, 5xx)
        retriable_exceptions: Exception types to retry (default: ConnectionError, TimeoutError)
        sleep: Sleep function, replaceable in tests

    Returns:
        Decorated function that will retry on transient errors

    Raises:
        RetryExhausted: When all retry attempts are exhausted
        Original exception: For permanent errors

    Example:
        @exponential_backoff_retry(max_retries=3, initial_delay=1.0)
        def call_google_api():
            return service.files().list(...).execute()
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            func_name = getattr(func, '__name__', '<function>')

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retriable_exceptions as e:
                    reason = f"Retriable exception {type(e).__name__}"
                    last_error = e
                except HttpError as e:
                    status_code = http_status_of(e)
                    if status_code not in transient_error_codes:
                        logger.error(
                            f"Permanent error {status_code} in {func_name}. Not retrying: {e}"
                        )
                        raise
                    reason = f"Transient error {status_code}"
                    last_error = e

                if attempt >= max_retries:
                    logger.error(
                        f"Max retries exhausted for {func_name} after {max_retries + 1} attempts. "
                        f"Last error: {last_error}"
                    )
                    raise RetryExhausted(
                        f"Failed after {max_retries + 1} attempts. Last error: {last_error}",
                        last_error,
                    ) from last_error

                wait = delay + (random.randint(0, 1000) / 1000 if jitter else 0)
                logger.warning(
                    f"{reason} in {func_name} (attempt {attempt + 1}/{max_retries + 1}): {last_error}. "
                    f"Retrying in {wait:.2f}s..."
                )
                sleep(wait)
                delay = min(delay * exponential_base, max_delay)

            # Unreachable: the loop either returns or raises
            raise RetryExhausted(f"Failed after {max_retries + 1} attempts.")

        return wrapper
    return decorator
