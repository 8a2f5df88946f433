"""
Wall-clock deadline threaded through every suspend-capable call.

A ``Deadline`` is an absolute point on a monotonic clock. Stages ask it how much
time is left and race their awaitables against it with ``run_within``; tests
inject a fake clock or a pre-expired deadline to exercise the timeout paths
without sleeping.

Usage:
    deadline = Deadline.after_ms(9_500)
    payload = await run_within(deadline, "fetch", client.fetch(params, deadline))
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from pm_ingest.errors import DeadlineExceeded

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True)
class Deadline:
    """
    Absolute expiry on a monotonic clock, in seconds.
    """

    expires_at: float
    clock: Clock = field(default=time.monotonic, compare=False, repr=False)

    @classmethod
    def after_ms(cls, budget_ms: float, clock: Clock = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + max(budget_ms, 0) / 1000.0, clock=clock)

    @classmethod
    def expired(cls, clock: Clock = time.monotonic) -> "Deadline":
        return cls(expires_at=clock(), clock=clock)

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(self.expires_at - self.clock(), 0.0)

    def remaining_ms(self) -> float:
        return self.remaining() * 1000.0

    @property
    def is_expired(self) -> bool:
        return self.remaining() <= 0.0

    def bound(self, seconds: Optional[float]) -> float:
        """Clamp ``seconds`` to the time left. ``None`` means 'as long as allowed'."""
        left = self.remaining()
        return left if seconds is None else min(seconds, left)

    def check(self, stage: str) -> None:
        if self.is_expired:
            raise DeadlineExceeded(stage)


def invocation_budget_ms(
    configured_ms: int,
    safety_margin_ms: int,
    runtime_remaining_ms: Optional[int] = None,
) -> int:
    """
    Budget for one invocation.

    The runtime's own remaining time (when known) caps the configured budget;
    the safety margin leaves room to log and return before the runtime kills
    the process.
    """
    ceiling = configured_ms
    if runtime_remaining_ms is not None:
        ceiling = min(ceiling, runtime_remaining_ms)
    return max(ceiling - safety_margin_ms, 0)


async def run_within(deadline: Deadline, stage: str, awaitable: Awaitable[T]) -> T:
    """
    Await ``awaitable`` but give up when the deadline expires.

    An already-expired deadline never starts the awaitable. On expiry the
    awaitable is cancelled, so context managers inside it unwind and release
    their resources, and ``DeadlineExceeded`` is raised.
    """
    if deadline.is_expired:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise DeadlineExceeded(stage)
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline.remaining())
    except asyncio.TimeoutError as exc:
        raise DeadlineExceeded(stage) from exc


__all__ = ["Deadline", "invocation_budget_ms", "run_within"]
