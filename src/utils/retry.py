"""Retry utilities with exponential or fixed backoff."""

import random
import time
from typing import Any, Callable, Optional, TypeVar

import structlog

from utils.logging import get_logger

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ) -> None:
        """Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts, first one included (default: 3)
            initial_delay: Initial delay in seconds (default: 1.0)
            max_delay: Maximum delay in seconds (default: 60.0)
            exponential_base: Base for exponential backoff (default: 2.0)
            jitter: Whether to add random jitter to delays (default: True)
            retryable_exceptions: Tuple of exception types to retry on
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions

    @classmethod
    def fixed(
        cls,
        max_attempts: int,
        delay: float,
        retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ) -> "RetryConfig":
        """Build a config that waits the same ``delay`` between every attempt."""
        return cls(
            max_attempts=max_attempts,
            initial_delay=delay,
            max_delay=delay,
            exponential_base=1.0,
            jitter=False,
            retryable_exceptions=retryable_exceptions,
        )


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Calculate delay for exponential backoff with optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds
    """
    delay = initial_delay * (exponential_base**attempt)
    delay = min(delay, max_delay)

    # Up to 10% on top of the computed delay
    if jitter:
        delay = delay + delay * 0.1 * random.random()

    return delay


def retry_sync(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    **kwargs: Any,
) -> T:
    """Retry a sync function with backoff.

    Args:
        func: Function to retry
        *args: Positional arguments for function
        config: Retry configuration (uses defaults if None)
        logger: Optional logger instance
        **kwargs: Keyword arguments for function

    Returns:
        Function result

    Raises:
        Last exception if all retries exhausted
    """
    if config is None:
        config = RetryConfig()

    logger = logger or get_logger("retry")

    for attempt in range(config.max_attempts):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts - 1:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = calculate_backoff_delay(
                attempt=attempt,
                initial_delay=config.initial_delay,
                max_delay=config.max_delay,
                exponential_base=config.exponential_base,
                jitter=config.jitter,
            )

            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )

            if delay > 0:
                time.sleep(delay)

    raise RuntimeError("Retry logic error")
