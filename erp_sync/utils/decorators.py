"""
Decorators Module
Retry and timing decorators
"""

import asyncio
import functools
import time
from typing import Callable, Iterator, Tuple, Type
from .logger import logger


def _delays(initial_delay: float, backoff_multiplier: float, max_delay: float) -> Iterator[float]:
    delay = initial_delay
    while True:
        yield delay
        delay = min(delay * backoff_multiplier, max_delay)


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """
    Retry an async callable with exponential backoff

    Args:
        max_attempts: Maximum number of attempts, including the first
        initial_delay: Delay before the second attempt, in seconds
        backoff_multiplier: Growth factor between attempts
        max_delay: Upper bound for a single delay
        exceptions: Exception types that trigger a retry; anything else propagates
    """
    def decorator(func: Callable):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"retry() expects a coroutine function, got {func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delays = _delays(initial_delay, backoff_multiplier, max_delay)
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {e}")
                        raise
                    delay = next(delays)
                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {func.__name__}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def timed(func: Callable):
    """
    Log the wall time of a function call at debug level
    """
    def _report(start_time: float) -> None:
        elapsed = time.perf_counter() - start_time
        logger.debug(f"{func.__qualname__} executed in {elapsed:.3f}s")

    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _report(start_time)
        return async_wrapper

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            _report(start_time)
    return sync_wrapper
