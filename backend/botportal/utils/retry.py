"""
Retry utilities for store writes.
Implements fixed, linear and exponential backoff.

Version: 2.1.0 (Async-only)
"""
import asyncio
import logging
import random
import functools
from typing import Callable, Optional, Tuple, Type
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """Retry strategy enumeration."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retry_on_exceptions: Tuple[Type[Exception], ...] = (Exception,)


def calculate_retry_delay(
    attempt: int,
    config: RetryConfig
) -> float:
    """
    Calculate delay before next retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    if config.strategy == RetryStrategy.FIXED:
        delay = config.initial_delay

    elif config.strategy == RetryStrategy.LINEAR:
        delay = config.initial_delay * (attempt + 1)

    else:
        delay = config.initial_delay * (config.exponential_base ** attempt)

    if config.jitter:
        delay += random.uniform(0, config.jitter)

    # Cap at max delay
    return min(delay, config.max_delay)


def async_retry(config: Optional[RetryConfig] = None):
    """
    Decorator for retrying async function calls with configurable backoff.

    Args:
        config: Retry configuration

    Example:
        @async_retry(RetryConfig(max_attempts=3, retry_on_exceptions=(StoreError,)))
        async def write_result():
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)

                except config.retry_on_exceptions as e:
                    if attempt >= config.max_attempts - 1:
                        logger.error(
                            f"{func.__name__} failed after {config.max_attempts} attempts: {e}"
                        )
                        raise

                    delay = calculate_retry_delay(attempt, config)
                    logger.warning(
                        f"{func.__name__} failed with {type(e).__name__}, "
                        f"retrying in {delay:.2f}s (attempt {attempt + 1}/{config.max_attempts}): {e}"
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError(f"{func.__name__} failed without exception")

        return wrapper
    return decorator


__all__ = [
    'RetryConfig',
    'RetryStrategy',
    'async_retry',
    'calculate_retry_delay'
]
