"""
Rate Limiter: per-account admission control for Reporting API calls.

Three sliding windows (1 s, 60 s, 3600 s) keep the timestamps of recent
dispatches. Callers enqueue coroutine factories with a priority; a single
consumer task drains the queue highest priority first, FIFO among equals.
Before each dispatch, timestamps that left their window are evicted; if any
window is at its cap the consumer sleeps until the nearest saturated window
frees a slot, then checks again. Every dispatch is followed by a short fixed
delay so requests never go out back-to-back even under the caps.

At most burst_limit requests wait in the queue; further callers block until
the consumer pops one, so a busy loop slows its neighbours down instead of
failing them.

Windows live in memory only and start empty after a restart.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Float tolerance when deciding a timestamp has left its window
_EPSILON = 1e-6


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_second: int = 5
    requests_per_minute: int = 100
    requests_per_hour: int = 1000
    burst_limit: int = 10
    inter_request_delay: float = 0.2

    _OPTION_NAMES = {
        "requestsPerSecond": "requests_per_second",
        "requestsPerMinute": "requests_per_minute",
        "requestsPerHour": "requests_per_hour",
        "burstLimit": "burst_limit",
        "interRequestDelay": "inter_request_delay",
    }

    @classmethod
    def from_options(cls, options: Optional[dict] = None) -> "RateLimitConfig":
        """Accepts camelCase (requestsPerSecond, ...) or snake_case keys."""
        kwargs = {}
        for key, value in (options or {}).items():
            name = cls._OPTION_NAMES.get(key, key)
            if name not in cls.__dataclass_fields__:
                raise ValueError(f"Unknown rate limit option: {key}")
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        return cls(
            requests_per_second=settings.rate_limit_per_second,
            requests_per_minute=settings.rate_limit_per_minute,
            requests_per_hour=settings.rate_limit_per_hour,
            burst_limit=settings.rate_limit_burst,
            inter_request_delay=settings.rate_limit_inter_request_delay_ms / 1000,
        )


class _Window:
    def __init__(self, cap: int, length: float):
        self.cap = cap
        self.length = length
        self.stamps: deque[float] = deque()

    def evict(self, now: float) -> None:
        while self.stamps and now - self.stamps[0] >= self.length - _EPSILON:
            self.stamps.popleft()

    @property
    def saturated(self) -> bool:
        return len(self.stamps) >= self.cap

    def wait_time(self, now: float) -> float:
        return max(self.stamps[0] + self.length - now, _EPSILON)


class RateLimiter:
    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._windows = (
            _Window(self.config.requests_per_second, 1.0),
            _Window(self.config.requests_per_minute, 60.0),
            _Window(self.config.requests_per_hour, 3600.0),
        )
        self._queue: list = []
        self._seq = itertools.count()
        self._consumer: Optional[asyncio.Task] = None
        self._space_waiters: deque[asyncio.Future] = deque()
        self.dispatched = 0

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    async def submit(self, func: Callable[[], Awaitable[Any]], priority: int = 0) -> Any:
        """Queue func and wait for its result (or exception) once it is dispatched.

        Blocks while burst_limit requests are already waiting.
        """
        loop = asyncio.get_running_loop()
        while len(self._queue) >= self.config.burst_limit:
            logger.debug(f"Rate limiter '{self.name}' has {len(self._queue)} waiting, blocking caller")
            waiter = loop.create_future()
            self._space_waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # pass a wake-up we can no longer use to the next caller
                if waiter.done() and not waiter.cancelled():
                    self._wake_one()
                raise
        future = loop.create_future()
        heapq.heappush(self._queue, (-priority, next(self._seq), future, func))
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._drain(), name=f"rate-limiter-{self.name}")
        return await future

    def _wait_time(self, now: float) -> float:
        waits = []
        for window in self._windows:
            window.evict(now)
            if window.saturated:
                waits.append(window.wait_time(now))
        return min(waits) if waits else 0.0

    async def _drain(self) -> None:
        try:
            while self._queue:
                wait = self._wait_time(self._clock())
                if wait > 0:
                    await self._sleep(wait)
                    continue

                _, _, future, func = heapq.heappop(self._queue)
                self._wake_one()
                if future.cancelled():
                    continue
                now = self._clock()
                for window in self._windows:
                    window.stamps.append(now)
                self.dispatched += 1

                try:
                    result = await func()
                except Exception as e:
                    if not future.cancelled():
                        future.set_exception(e)
                else:
                    if not future.cancelled():
                        future.set_result(result)

                await self._sleep(self.config.inter_request_delay)
        except asyncio.CancelledError:
            self._fail_pending(RuntimeError(f"Rate limiter '{self.name}' closed"))
            raise

    def _wake_one(self) -> None:
        while self._space_waiters:
            waiter = self._space_waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _fail_pending(self, exc: Exception) -> None:
        while self._queue:
            _, _, future, _ = heapq.heappop(self._queue)
            if not future.done():
                future.set_exception(exc)
        while self._space_waiters:
            waiter = self._space_waiters.popleft()
            if not waiter.done():
                waiter.set_exception(exc)

    async def close(self) -> None:
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._fail_pending(RuntimeError(f"Rate limiter '{self.name}' closed"))

    def stats(self) -> dict:
        now = self._clock()
        for window in self._windows:
            window.evict(now)
        return {
            "queued": len(self._queue),
            "blocked": sum(1 for w in self._space_waiters if not w.done()),
            "dispatched": self.dispatched,
            "last_second": len(self._windows[0].stamps),
            "last_minute": len(self._windows[1].stamps),
            "last_hour": len(self._windows[2].stamps),
        }


class RateLimiterRegistry:
    """One limiter per account, created on first use."""

    def __init__(self, config: Optional[RateLimitConfig] = None, **limiter_kwargs):
        self.config = config or RateLimitConfig()
        self._limiter_kwargs = limiter_kwargs
        self._limiters: dict[str, RateLimiter] = {}

    def get(self, key) -> RateLimiter:
        key = str(key)
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(self.config, name=key, **self._limiter_kwargs)
            self._limiters[key] = limiter
        return limiter

    def stats(self) -> dict:
        return {key: limiter.stats() for key, limiter in self._limiters.items()}

    async def close(self) -> None:
        for limiter in self._limiters.values():
            await limiter.close()
        self._limiters.clear()
