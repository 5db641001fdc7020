"""Bounded retry helpers.

Two shapes of retrying live here:

- ``poll`` runs a check a fixed number of times at a fixed interval.
  Used for waiting on association and for scanning.
- ``async_retry`` retries a coroutine on transient OS-level errors with
  exponential backoff. Used around spawning platform commands.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, ParamSpec, TypeVar

from .errors import ConnectionTimeoutError

P = ParamSpec("P")
R = TypeVar("R")

Sleep = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollConfig:
    """Fixed-interval polling budget.

    Attributes:
        max_attempts: Number of checks, including the first
        interval: Seconds between consecutive checks
    """

    max_attempts: int
    interval: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval <= 0:
            raise ValueError("interval must be positive")


async def poll(
    check: Callable[[], Awaitable[bool]],
    config: PollConfig,
    sleep: Sleep = asyncio.sleep,
    label: str = "poll",
) -> int:
    """Run ``check`` until it returns True or the budget is used up.

    Sleeps ``config.interval`` between attempts, never after the last one.

    Returns:
        The 1-based attempt number that succeeded

    Raises:
        ConnectionTimeoutError: If every attempt returned False
    """
    for attempt in range(1, config.max_attempts + 1):
        if await check():
            return attempt

        logger.debug("%s: attempt %d/%d failed", label, attempt, config.max_attempts)
        if attempt < config.max_attempts:
            await sleep(config.interval)

    raise ConnectionTimeoutError(attempts=config.max_attempts)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of retry attempts (including first try)
        base_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay cap in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delays
        retryable_exceptions: Tuple of exception types that trigger retry
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (
            TimeoutError,
            OSError,
        )
    )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and optional jitter.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base**attempt),
            self.max_delay,
        )
        if self.jitter:
            # 50% to 100% of calculated delay
            delay *= 0.5 + random.random() * 0.5
        return delay


# Spawning a command can fail briefly while the radio reconfigures
COMMAND_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


def async_retry(
    config: RetryConfig | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Decorator for async retry with exponential backoff.

    Usage:
        @async_retry()
        async def run_command():
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            last_exception: Exception | None = None

            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)

                except config.retryable_exceptions as e:
                    last_exception = e
                    if attempt < config.max_attempts - 1:
                        delay = config.calculate_delay(attempt)
                        logger.warning(
                            "Async retry %d/%d after %.1fs: %s",
                            attempt + 1,
                            config.max_attempts,
                            delay,
                            str(e),
                            extra={
                                "function": func.__name__,
                                "error_type": type(e).__name__,
                            },
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            "All %d async attempts failed for %s",
                            config.max_attempts,
                            func.__name__,
                        )

            if last_exception:
                raise last_exception
            raise RuntimeError("Async retry failed with no exception")

        return wrapper

    return decorator
