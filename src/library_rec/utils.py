"""Utility functions and decorators for library_rec."""

import time
import logging
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Retry the wrapped call on ``exceptions``, sleeping
    ``initial_delay * backoff_factor ** n`` seconds between attempts.
    The last failure is re-raised; other exception types propagate at once.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"{func.__name__} gave up after {attempt} attempts: {e}")
                        raise
                    pause = initial_delay * backoff_factor ** (attempt - 1)
                    logger.warning(f"{func.__name__} attempt {attempt} failed ({e}), next try in {pause:.1f}s")
                    time.sleep(pause)

        return wrapper
    return decorator


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
