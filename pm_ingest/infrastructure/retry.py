"""
Bounded retry policy for transient upstream failures.

The policy is a plain value object so it can be built from settings, swapped in
tests, and inspected (``delay_for``) without running anything. Execution is
delegated to tenacity; every backoff sleep is clamped to the invocation deadline,
and once the deadline is gone the loop ends with ``DeadlineExceeded`` instead of
another attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from pm_ingest.config import Settings
from pm_ingest.errors import DeadlineExceeded, FetchTransient
from pm_ingest.utils.deadline import Deadline
from pm_ingest.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempts and exponential backoff schedule.

    Attributes
    ----------
    max_attempts : int
        Total attempts including the first one.
    base_delay : float
        Delay in seconds after the first failure.
    max_delay : float
        Ceiling for any single delay.
    multiplier : float
        Growth factor between consecutive delays.
    retry_on : tuple
        Exception types worth another attempt.
    sleep : callable
        Awaitable sleep; tests pass a recorder instead of ``asyncio.sleep``.
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (FetchTransient,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.fetch_max_attempts,
            base_delay=settings.fetch_backoff_base_ms / 1000.0,
            max_delay=settings.fetch_backoff_max_ms / 1000.0,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given failed attempt (1-based), ignoring deadlines."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def _wait(self, deadline: Deadline) -> Callable[[RetryCallState], float]:
        backoff = wait_exponential(
            multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
        )

        def wait(retry_state: RetryCallState) -> float:
            return deadline.bound(backoff(retry_state))

        return wait

    def retrying(self, deadline: Deadline) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(self.max_attempts),
                lambda _state: deadline.is_expired,
            ),
            wait=self._wait(deadline),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(log, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    async def run(self, fn: Callable[[], Awaitable[T]], deadline: Deadline, stage: str = "fetch") -> T:
        """
        Call ``fn`` until it succeeds, fails permanently, or attempts run out.

        Raises
        ------
        DeadlineExceeded
            The deadline expired while retrying a transient failure.
        """
        try:
            return await self.retrying(deadline)(fn)
        except self.retry_on as exc:
            if deadline.is_expired:
                raise DeadlineExceeded(stage) from exc
            raise


__all__ = ["RetryPolicy"]
