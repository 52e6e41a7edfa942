"""Retry and backoff utilities for resilient operations.

This module provides exponential backoff retry functionality for async operations,
used for every upstream call made while gathering brief data.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from dailybrief.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    When ``raise_on_failure`` is False, exhausting all attempts returns the
    value produced by ``fallback`` instead of raising.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))
    raise_on_failure: bool = True
    fallback: Callable[[], Any] = list


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Execute async function with exponential backoff retry.

    The first attempt runs immediately. After failed attempt ``n`` (1-based)
    the wait is ``min(backoff_base * 2^(n-1), backoff_max)`` seconds, with
    random jitter applied if enabled.

    Args:
        fn: Async function to execute (no arguments)
        config: Retry configuration, uses defaults if not provided
        operation_name: Name for logging purposes

    Returns:
        Result of fn(), or ``config.fallback()`` when retries are exhausted
        and ``raise_on_failure`` is False

    Raises:
        Exception: The last exception if all retries are exhausted and
        ``raise_on_failure`` is True

    Example:
        ```python
        config = RetryConfig(max_attempts=3, raise_on_failure=False)
        emails = await retry_with_backoff(
            lambda: client.get_recent_emails(address, 30, query),
            config=config,
            operation_name="gmail:unread",
        )
        ```
    """
    config = config or RetryConfig()
    last_exception: Exception | None = None

    for attempt in range(config.max_attempts):
        try:
            result = await fn()
            if attempt > 0:
                logger.bind(operation=operation_name, attempt=attempt + 1).info("retry_succeeded")
            return result
        except config.retryable_exceptions as e:
            last_exception = e

            if attempt + 1 == config.max_attempts:
                logger.bind(
                    operation=operation_name,
                    attempts=config.max_attempts,
                    error=str(e),
                ).error("retry_exhausted")
                if config.raise_on_failure:
                    raise
                return config.fallback()

            delay = min(config.backoff_base * (2**attempt), config.backoff_max)
            if config.jitter:
                delay *= 0.5 + random.random()

            logger.bind(
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            ).warning("retry_attempt")
            await asyncio.sleep(delay)

    # Only reachable with max_attempts < 1
    if last_exception is not None:
        raise last_exception
    raise RuntimeError("retry_with_backoff called with max_attempts < 1")
