from __future__ import annotations

import pytest

from pm_ingest.errors import DeadlineExceeded, FetchRejected, FetchTransient
from pm_ingest.infrastructure.retry import RetryPolicy
from pm_ingest.utils.deadline import Deadline

BASE_DELAY = 0.01
MAX_DELAY = 0.04


class _Flaky:
    """Fails with the given exceptions in order, then returns ``result``."""

    def __init__(self, *failures: BaseException, result: str = "payload") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_delay_schedule_grows_and_caps() -> None:
    policy = RetryPolicy(base_delay=BASE_DELAY, max_delay=MAX_DELAY)

    assert [policy.delay_for(n) for n in range(1, 6)] == pytest.approx([0.01, 0.02, 0.04, 0.04, 0.04])


def test_policy_from_settings(settings) -> None:
    policy = RetryPolicy.from_settings(settings)

    assert policy.max_attempts == settings.fetch_max_attempts
    assert policy.base_delay == pytest.approx(settings.fetch_backoff_base_ms / 1000.0)
    assert policy.max_delay == pytest.approx(settings.fetch_backoff_max_ms / 1000.0)


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff(sleep_recorder) -> None:
    sleep = sleep_recorder()
    policy = RetryPolicy(max_attempts=3, base_delay=BASE_DELAY, max_delay=MAX_DELAY, sleep=sleep)
    fn = _Flaky(FetchTransient("503"), FetchTransient("503"))

    result = await policy.run(fn, Deadline.after_ms(5_000))

    assert result == "payload"
    assert fn.calls == 3
    assert sleep.delays == pytest.approx([0.01, 0.02])


@pytest.mark.asyncio
async def test_attempts_are_bounded(sleep_recorder) -> None:
    sleep = sleep_recorder()
    policy = RetryPolicy(max_attempts=3, base_delay=BASE_DELAY, sleep=sleep)
    fn = _Flaky(*(FetchTransient("503") for _ in range(5)))

    with pytest.raises(FetchTransient):
        await policy.run(fn, Deadline.after_ms(5_000))

    assert fn.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(sleep_recorder) -> None:
    sleep = sleep_recorder()
    policy = RetryPolicy(max_attempts=3, sleep=sleep)
    fn = _Flaky(FetchRejected("404", status=404))

    with pytest.raises(FetchRejected):
        await policy.run(fn, Deadline.after_ms(5_000))

    assert fn.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_backoff_is_clamped_to_deadline_and_expiry_ends_retrying(fake_clock, sleep_recorder) -> None:
    sleep = sleep_recorder(fake_clock)
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=10.0, sleep=sleep)
    deadline = Deadline.after_ms(1_500, clock=fake_clock)
    fn = _Flaky(*(FetchTransient("503") for _ in range(10)))

    with pytest.raises(DeadlineExceeded) as excinfo:
        await policy.run(fn, deadline, stage="fetch")

    assert excinfo.value.stage == "fetch"
    # 1.0s, then the remaining 0.5s; the deadline then stops the loop.
    assert sleep.delays == pytest.approx([1.0, 0.5])
    assert fn.calls == 3
