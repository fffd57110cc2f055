"""
Retry mechanism for resilient operations.
"""

import asyncio
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[[], Awaitable[Any]],
                          *,
                          exceptions: tuple = (Exception,),
                          config: Optional[RetryConfig] = None,
                          operation: str = "operation") -> Any:
    """Await ``func()`` until it succeeds or ``config.max_attempts`` is reached.

    Only exceptions listed in ``exceptions`` are retried; anything else
    propagates immediately. Exhaustion raises ``RetryError`` chained to the
    last failure.
    """
    config = config or RetryConfig()
    logger = get_logger(f"retry.{operation}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func()
        except exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    operation=operation,
                    error=repr(e)
                )
                raise RetryError(
                    f"{operation} failed after {config.max_attempts} attempts",
                    last_exception=e,
                    attempts=attempt
                ) from e

            delay = _calculate_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                operation=operation,
                error=repr(e)
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, operation=operation)
            return result

    # Unreachable: the loop either returns or raises on the last attempt.
    raise AssertionError("retry loop exited without result")


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def wrapper(*args, **kwargs) -> Any:
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                exceptions=exceptions,
                config=config,
                operation=func.__name__,
            )

        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay between retry attempts."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
