"""
Retry Service with Exponential Backoff
Retries transient backend failures (429, 5xx, network) and nothing else
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from config import Config
from utils.api_errors import RateLimitedError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryService:
    """Service for handling retries with exponential backoff"""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        exponential_base: Optional[float] = None,
        jitter: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts or Config.RETRY_MAX_ATTEMPTS
        self.initial_delay = Config.RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
        self.max_delay = Config.RETRY_MAX_DELAY if max_delay is None else max_delay
        self.exponential_base = exponential_base or Config.RETRY_BACKOFF_FACTOR
        self.jitter = jitter
        self._sleep = sleep

    def _delay_for(self, delay: float, error: BaseException) -> float:
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        if self.jitter:
            return delay * (0.5 + random.random())
        return delay

    async def retry_async(
        self,
        func: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException], bool] = is_retryable,
        label: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Retry an async callable with exponential backoff

        Args:
            func: Zero-argument coroutine factory; called once per attempt
            should_retry: Predicate deciding whether a failure is transient
            label: Name used in logs (defaults to the callable's name)
            max_attempts: Per-call override of the attempt budget

        Non-retryable errors propagate on the first attempt; the last transient
        error propagates once the budget is spent.
        """
        attempts = max_attempts or self.max_attempts
        name = label or getattr(func, "__name__", "call")
        attempt = 0
        delay = self.initial_delay

        while True:
            try:
                return await func()
            except Exception as e:
                attempt += 1
                if not should_retry(e):
                    raise
                if attempt >= attempts:
                    logger.error(f"Max retry attempts ({attempts}) reached for {name}")
                    raise

                actual_delay = self._delay_for(delay, e)
                logger.warning(
                    f"Attempt {attempt}/{attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )
                await self._sleep(actual_delay)

                # Exponential backoff
                delay = min(delay * self.exponential_base, self.max_delay)


# Predefined retry strategies for different call kinds
RETRY_STRATEGIES = {
    'read': {
        'max_attempts': 3,
        'initial_delay': 1.0,
        'max_delay': 8.0,
        'exponential_base': 2.0
    },
    # Only used for mutations carrying an Idempotency-Key
    'idempotent_mutation': {
        'max_attempts': 3,
        'initial_delay': 2.0,
        'max_delay': 16.0,
        'exponential_base': 2.0
    },
    'external': {
        'max_attempts': 2,
        'initial_delay': 1.0,
        'max_delay': 5.0,
        'exponential_base': 2.0
    },
}
