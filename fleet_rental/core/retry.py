"""
Retry utilities with exponential backoff.

This module provides a decorator for retrying blocking calls with exponential
backoff. Inside the library it bounds the connection pool's wait for a free
connection; callers may also use it around engine operations that failed
with a ``RetryableError``.
"""

import logging
import time
from functools import wraps
from typing import Any, Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

class RetryableError(Exception):
    """
    Exception that may succeed when retried.

    Used for transient failures:
    - Connection pool saturation
    - Database connection loss or lock timeouts
    - Other storage faults where the transaction was rolled back cleanly
    """
    pass

class NonRetryableError(Exception):
    """
    Deterministic failure; the same call would fail the same way again.

    Covers rejected input and calls the acting user may not make.
    """
    pass

def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = (RetryableError, SQLAlchemyError),
) -> Callable[[F], F]:
    """Decorator for blocking functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_delay: Wait before the second attempt, in seconds
        max_delay: Upper bound for any single wait, in seconds
        retry_on: Exception types that trigger a retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
        def fetch_data():
            return store.get_all(conn)

    Error Handling:
    - NonRetryableError: propagates on the first failure
    - Types listed in retry_on: Retried up to max_attempts times
    - Anything else: Raised immediately

    Backoff Strategy:
    - delay = base_delay * (2 ^ attempt), capped at max_delay
    - The last exception is re-raised once all attempts are spent
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)

                except NonRetryableError:
                    raise

                except retry_on as e:
                    last_exception = e
                    if attempt < max_attempts - 1:
                        delay = min(base_delay * (2 ** attempt), max_delay)
                        logger.debug(
                            f"Retry attempt {attempt + 1}/{max_attempts} for {func.__name__}. "
                            f"Error: {str(e)}. Waiting {delay:.2f}s..."
                        )
                        time.sleep(delay)
                    else:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}. "
                            f"Final error: {str(e)}"
                        )

            raise last_exception

        return wrapper
    return decorator
