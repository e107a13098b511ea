"""
Bounded Retry Policy

One retry policy shared by persistence writes and actuation
acknowledgement tracking: a fixed number of attempts with exponential
backoff between them, never an unbounded wait.

Usage:
    policy = RetryPolicy.from_settings(settings.retry)
    await policy.run(lambda: store.save_schedule(schedule), "save schedule")
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .config import RetrySettings
from .exceptions import CanopyError
from .logging_setup import get_service_logger

logger = get_service_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts plus exponential backoff (base * multiplier^n, capped)"""
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 8.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_s=settings.backoff_base_s,
            multiplier=settings.backoff_multiplier,
            max_delay_s=settings.backoff_max_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt"""
        if attempt < 1:
            return 0.0
        return min(self.max_delay_s, self.base_delay_s * self.multiplier ** (attempt - 1))

    def delays(self) -> list[float]:
        """Backoff sequence between attempts, e.g. [1.0, 2.0] for 3 attempts"""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Retry unless attempts are exhausted or the error is not recoverable"""
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, CanopyError) and not error.recoverable:
            return False
        return True

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Run an async operation with retries.

        The last error is re-raised once attempts are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self.should_retry(attempt, e):
                    logger.error(
                        f"{description} failed after {attempt} attempt(s): {e}",
                        extra={"operation": description, "attempts": attempt},
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}",
                    extra={"operation": description, "attempt": attempt},
                )
                await sleep(delay)
