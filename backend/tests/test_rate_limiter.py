"""
Tests for the sliding-window rate limiter.
"""

import asyncio

import pytest

from report_sync.services.rate_limiter import (
    RateLimitConfig, RateLimiter, RateLimiterRegistry,
)


class FakeTime:
    """Monotonic clock whose sleep() advances time instead of waiting."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.anyio
async def test_dispatches_respect_every_window():
    fake = FakeTime()
    config = RateLimitConfig(requests_per_second=2, requests_per_minute=3, requests_per_hour=100,
                             burst_limit=10, inter_request_delay=0)
    limiter = RateLimiter(config, clock=fake, sleep=fake.sleep)
    dispatched = []

    async def call():
        dispatched.append(fake.now)
        return fake.now

    results = await asyncio.gather(*(limiter.submit(call) for _ in range(5)))
    assert dispatched == [0.0, 0.0, 1.0, 60.0, 60.0]
    assert results == dispatched
    for t in dispatched:
        assert sum(1 for s in dispatched if t - 1.0 < s <= t) <= 2
        assert sum(1 for s in dispatched if t - 60.0 < s <= t) <= 3


@pytest.mark.anyio
async def test_inter_request_delay_spaces_dispatches():
    fake = FakeTime()
    limiter = RateLimiter(RateLimitConfig(inter_request_delay=0.2), clock=fake, sleep=fake.sleep)
    dispatched = []

    async def call():
        dispatched.append(round(fake.now, 6))

    await asyncio.gather(*(limiter.submit(call) for _ in range(3)))
    assert dispatched == [0.0, 0.2, 0.4]


@pytest.mark.anyio
async def test_higher_priority_goes_first_fifo_among_equals():
    limiter = RateLimiter(RateLimitConfig(inter_request_delay=0))
    gate = asyncio.Event()
    order = []

    async def blocker():
        await gate.wait()
        order.append("blocker")

    def record(name):
        async def call():
            order.append(name)
        return call

    first = asyncio.create_task(limiter.submit(blocker, priority=1))
    await _settle()
    rest = [
        asyncio.create_task(limiter.submit(record("low-1"), priority=1)),
        asyncio.create_task(limiter.submit(record("critical"), priority=4)),
        asyncio.create_task(limiter.submit(record("medium"), priority=2)),
        asyncio.create_task(limiter.submit(record("low-2"), priority=1)),
    ]
    await _settle()
    assert limiter.queue_depth == 4
    gate.set()
    await asyncio.gather(first, *rest)
    assert order == ["blocker", "critical", "medium", "low-1", "low-2"]


@pytest.mark.anyio
async def test_full_queue_blocks_callers_until_a_slot_frees():
    limiter = RateLimiter(RateLimitConfig(burst_limit=2, inter_request_delay=0))
    gate = asyncio.Event()

    async def blocker():
        await gate.wait()

    async def noop():
        return "ok"

    first = asyncio.create_task(limiter.submit(blocker))
    await _settle()
    queued = [asyncio.create_task(limiter.submit(noop)) for _ in range(2)]
    await _settle()

    overflow = asyncio.create_task(limiter.submit(noop))
    await _settle()
    assert not overflow.done()
    assert limiter.queue_depth == 2
    assert limiter.stats()["blocked"] == 1

    gate.set()
    await first
    assert await asyncio.gather(*queued) == ["ok", "ok"]
    assert await overflow == "ok"
    assert limiter.dispatched == 4


@pytest.mark.anyio
async def test_close_fails_blocked_callers():
    limiter = RateLimiter(RateLimitConfig(burst_limit=1, inter_request_delay=0))
    gate = asyncio.Event()

    async def blocker():
        await gate.wait()

    first = asyncio.create_task(limiter.submit(blocker))
    await _settle()
    queued = asyncio.create_task(limiter.submit(blocker))
    blocked = asyncio.create_task(limiter.submit(blocker))
    await _settle()

    await limiter.close()
    with pytest.raises(RuntimeError, match="closed"):
        await blocked
    with pytest.raises(RuntimeError, match="closed"):
        await queued
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.anyio
async def test_errors_reach_the_caller_and_do_not_stop_the_queue():
    limiter = RateLimiter(RateLimitConfig(inter_request_delay=0))

    async def broken():
        raise RuntimeError("upstream 500")

    async def fine():
        return 42

    results = await asyncio.gather(limiter.submit(broken), limiter.submit(fine), return_exceptions=True)
    assert isinstance(results[0], RuntimeError)
    assert results[1] == 42
    assert limiter.dispatched == 2


@pytest.mark.anyio
async def test_close_fails_waiting_callers():
    limiter = RateLimiter(RateLimitConfig(inter_request_delay=0))
    gate = asyncio.Event()

    async def blocker():
        await gate.wait()

    async def noop():
        return None

    first = asyncio.create_task(limiter.submit(blocker))
    await _settle()
    waiting = asyncio.create_task(limiter.submit(noop))
    await _settle()
    await limiter.close()

    with pytest.raises(RuntimeError, match="closed"):
        await waiting
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first


def test_config_accepts_camel_case_options():
    config = RateLimitConfig.from_options({"requestsPerSecond": 2, "burstLimit": 4, "inter_request_delay": 0.5})
    assert config.requests_per_second == 2
    assert config.burst_limit == 4
    assert config.inter_request_delay == 0.5
    assert config.requests_per_minute == 100


def test_config_rejects_unknown_options():
    with pytest.raises(ValueError, match="Unknown rate limit option"):
        RateLimitConfig.from_options({"requestsPerDay": 10})


@pytest.mark.anyio
async def test_registry_keeps_one_limiter_per_account():
    registry = RateLimiterRegistry(RateLimitConfig())
    assert registry.get("a") is registry.get("a")
    assert registry.get("a") is not registry.get("b")
    assert set(registry.stats()) == {"a", "b"}
    await registry.close()
    assert registry.stats() == {}
