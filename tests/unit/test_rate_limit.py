"""Unit tests for the token bucket rate limiter"""

import pytest

from writeoff_gateway.utils.rate_limit import TokenBucket


class FakeClock:
    """Clock that only advances when the limiter sleeps"""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def test_burst_is_served_without_waiting():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=2.0, burst=3, clock=clock, sleep=clock.sleep)

    for _ in range(3):
        await bucket.acquire()

    assert clock.sleeps == []


async def test_acquire_waits_for_refill_after_burst():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=2.0, burst=1, clock=clock, sleep=clock.sleep)

    await bucket.acquire()
    await bucket.acquire()
    await bucket.acquire()

    assert clock.sleeps == [pytest.approx(0.5), pytest.approx(0.5)]
    assert clock.now == pytest.approx(101.0)


async def test_idle_time_refills_up_to_capacity_only():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=1.0, burst=2, clock=clock, sleep=clock.sleep)
    await bucket.acquire()
    await bucket.acquire()

    clock.now += 60.0
    await bucket.acquire()
    await bucket.acquire()
    await bucket.acquire()

    assert clock.sleeps == [pytest.approx(1.0)]


def test_non_positive_rate_is_rejected():
    with pytest.raises(ValueError):
        TokenBucket(rate_per_second=0)
