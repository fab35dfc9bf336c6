"""
Bounded retry with a fixed delay schedule.

Used by the premium resolver to wait out account provisioning right after
sign-up. The sleep function is injectable so tests run without real delays.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from structlog import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DELAYS: tuple[float, ...] = (0.25, 0.5, 0.75)


class RetryPolicy:
    """
    Run an operation up to 1 + len(delays) times.

    A result is retried while should_retry(result) is true; exceptions are
    never retried and propagate to the caller.
    """

    def __init__(
        self,
        delays: Sequence[float] = DEFAULT_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if any(delay < 0 for delay in delays):
            raise ValueError(f"Retry delays cannot be negative: {list(delays)}")
        self._delays = tuple(delays)
        self._sleep = sleep

    @property
    def attempts(self) -> int:
        return 1 + len(self._delays)

    @property
    def delays(self) -> tuple[float, ...]:
        return self._delays

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[T], bool],
    ) -> tuple[T, int]:
        """Return the last result and the number of attempts made."""
        result = await operation()
        attempt = 1
        for delay in self._delays:
            if not should_retry(result):
                break
            logger.debug("retry_scheduled", attempt=attempt, delay_seconds=delay)
            await self._sleep(delay)
            result = await operation()
            attempt += 1
        return result, attempt
