"""
Bounded retry with linear backoff.

The policy knows nothing about threads or event loops: `call` sleeps with a
blocking sleep, `acall` awaits asyncio.sleep, and both share the same schedule.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetriesExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: 1x, 2x, 3x the step."""
        return self.backoff_seconds * attempt

    def call(self, fn: Callable[[], T]) -> T:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except self.retry_on as exc:
                last_error = exc
                logger.info("Attempt %d/%d failed: %s", attempt, self.max_attempts, exc)
                if attempt < self.max_attempts:
                    self.sleep(self.delay_for(attempt))
        raise RetriesExhausted(self.max_attempts, last_error)

    async def acall(self, fn: Callable[[], Awaitable[T]]) -> T:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except self.retry_on as exc:
                last_error = exc
                logger.info("Attempt %d/%d failed: %s", attempt, self.max_attempts, exc)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.delay_for(attempt))
        raise RetriesExhausted(self.max_attempts, last_error)
