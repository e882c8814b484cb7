"""Bounded exponential backoff for single remote calls."""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from loguru import logger

from .exceptions import GitLabConnectionError, GitLabRateLimitError, GitLabServerError

RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (
    GitLabRateLimitError,
    GitLabServerError,
    GitLabConnectionError,
)


class RetryPolicy:
    """Fixed base delay, doubling per attempt, capped attempt count.

    Only transient remote failures (429, 5xx, network) are retried. Whole
    migration jobs are never retried here.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_attempts: int = 4,
        max_delay: float = 30.0,
        retry_on: Tuple[Type[Exception], ...] = RETRYABLE_ERRORS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize retry policy.

        Args:
            base_delay: Delay before the second attempt
            max_attempts: Total attempts including the first
            max_delay: Upper bound for a single delay
            retry_on: Exception types considered transient
            sleep: Awaitable sleep function (injectable for tests)
        """
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self.retry_on = retry_on
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        """Build a policy from ``RetryConfig``."""
        return cls(
            base_delay=config.base_delay,
            max_attempts=config.max_attempts,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if isinstance(error, GitLabRateLimitError):
            delay = max(delay, float(error.retry_after))
        return min(delay, self.max_delay)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` retrying transient failures.

        Raises:
            The last error once attempts are exhausted, or any non-transient
            error immediately
        """
        attempt = 1
        while True:
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f'Giving up after {attempt} attempts: {e}'
                    )
                    raise
                delay = self.delay_for(attempt, e)
                logger.warning(
                    f'Transient error on attempt {attempt}/{self.max_attempts}: {e}. '
                    f'Retrying in {delay:.1f}s'
                )
                await self._sleep(delay)
                attempt += 1
