"""
Upstream call governor for the job worker.

Two concurrency semaphores and two token buckets, one of each at global scope
and one of each per narrower scope (the vendor tag of the job). Every queued
upstream call runs inside ``RateGovernor.permit``.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings

logger = get_logger(__name__)

MIN_BUCKET_WAIT_S = 0.025


class TokenBucket:
    """Continuously refilling token bucket sized in requests per minute."""

    def __init__(
        self,
        capacity_per_minute: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity_per_minute <= 0:
            raise ValueError("capacity_per_minute must be positive")
        self.capacity = float(capacity_per_minute)
        self._refill_per_second = self.capacity / 60
        self._tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + elapsed * self._refill_per_second)
        self._last_refill = now

    async def take(self, count: float = 1) -> float:
        """Wait until ``count`` tokens are available and spend them.

        Returns the seconds spent waiting.
        """
        if count > self.capacity:
            raise ValueError(f"cannot take {count} tokens from a bucket of {self.capacity}")

        started = self._clock()
        # Takers queue on the lock so a waiting caller is not overtaken
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= count:
                    self._tokens -= count
                    return self._clock() - started

                deficit = count - self._tokens
                await self._sleep(max(deficit / self._refill_per_second, MIN_BUCKET_WAIT_S))


@dataclass
class PermitWaits:
    global_semaphore_s: float = 0.0
    scope_semaphore_s: float = 0.0
    global_bucket_s: float = 0.0
    scope_bucket_s: float = 0.0

    def slowest(self) -> float:
        return max(
            self.global_semaphore_s,
            self.scope_semaphore_s,
            self.global_bucket_s,
            self.scope_bucket_s,
        )

    def as_log_fields(self) -> dict[str, int]:
        return {
            "global_semaphore_wait_ms": int(self.global_semaphore_s * 1000),
            "scope_semaphore_wait_ms": int(self.scope_semaphore_s * 1000),
            "global_bucket_wait_ms": int(self.global_bucket_s * 1000),
            "scope_bucket_wait_ms": int(self.scope_bucket_s * 1000),
        }


class RateGovernor:
    """
    Dual-scope concurrency and rate governor.

    Acquisition order is global semaphore, scope semaphore, global bucket,
    scope bucket. Semaphores are released in reverse order on every exit path.
    """

    def __init__(
        self,
        *,
        global_max_concurrency: int,
        global_max_rpm: int,
        scope_max_concurrency: int,
        scope_max_rpm: int,
        slow_wait_threshold_s: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.global_max_concurrency = global_max_concurrency
        self.global_max_rpm = global_max_rpm
        self.scope_max_concurrency = scope_max_concurrency
        self.scope_max_rpm = scope_max_rpm
        self.slow_wait_threshold_s = slow_wait_threshold_s
        self._clock = clock
        self._sleep = sleep

        self.global_semaphore = asyncio.Semaphore(global_max_concurrency)
        self.global_bucket = TokenBucket(global_max_rpm, clock=clock, sleep=sleep)
        self._scope_semaphores: dict[str, asyncio.Semaphore] = {}
        self._scope_buckets: dict[str, TokenBucket] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateGovernor":
        return cls(
            global_max_concurrency=settings.global_max_concurrency,
            global_max_rpm=settings.global_max_rpm,
            scope_max_concurrency=settings.vendor_max_concurrency,
            scope_max_rpm=settings.vendor_max_rpm,
            slow_wait_threshold_s=settings.throttle_slow_wait_ms / 1000,
        )

    def scope_semaphore(self, scope: str) -> asyncio.Semaphore:
        if scope not in self._scope_semaphores:
            self._scope_semaphores[scope] = asyncio.Semaphore(self.scope_max_concurrency)
        return self._scope_semaphores[scope]

    def scope_bucket(self, scope: str) -> TokenBucket:
        if scope not in self._scope_buckets:
            self._scope_buckets[scope] = TokenBucket(
                self.scope_max_rpm, clock=self._clock, sleep=self._sleep
            )
        return self._scope_buckets[scope]

    @asynccontextmanager
    async def permit(self, scope: str) -> AsyncIterator[PermitWaits]:
        """Hold both concurrency slots and spend both rate tokens for one call."""
        waits = PermitWaits()
        scope_semaphore = self.scope_semaphore(scope)

        started = self._clock()
        await self.global_semaphore.acquire()
        try:
            waits.global_semaphore_s = self._clock() - started

            started = self._clock()
            await scope_semaphore.acquire()
            try:
                waits.scope_semaphore_s = self._clock() - started
                waits.global_bucket_s = await self.global_bucket.take()
                waits.scope_bucket_s = await self.scope_bucket(scope).take()

                if waits.slowest() > self.slow_wait_threshold_s:
                    logger.warning(
                        "throttle_wait_observed",
                        scope=scope,
                        **waits.as_log_fields(),
                        limits={
                            "global_max_concurrency": self.global_max_concurrency,
                            "scope_max_concurrency": self.scope_max_concurrency,
                            "global_max_rpm": self.global_max_rpm,
                            "scope_max_rpm": self.scope_max_rpm,
                        },
                    )

                yield waits
            finally:
                scope_semaphore.release()
        finally:
            self.global_semaphore.release()
