"""
Protection for synchronous ERP calls made while a caller waits.

Unlike the worker governor this never queues: a call over the concurrency or
per-minute cap is rejected at once with a retry-after hint.
"""

import asyncio
import math
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import RateLimitedError
from erp_gateway.v1.erp.retry import RetryPolicy, retry_async, with_timeout

logger = get_logger(__name__)

T = TypeVar("T")

RPM_WINDOW_S = 60


class UpstreamProtection:
    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.settings = settings
        self.max_concurrency = settings.erp_max_concurrency
        self.max_rpm = settings.erp_max_rpm
        self.policy = RetryPolicy.from_settings(settings)
        self.active = 0
        self._window_start = 0.0
        self._window_count = 0
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

    @property
    def window_count(self) -> int:
        return self._window_count

    def _assert_within_concurrency(self, operation: str) -> None:
        if self.active >= self.max_concurrency:
            logger.warning(
                "erp_throttle_concurrency",
                operation=operation,
                max_concurrency=self.max_concurrency,
                active=self.active,
            )
            raise RateLimitedError(
                "ERP concurrency limit exceeded", retry_after_seconds=1, code="THROTTLED"
            )

    def _assert_within_rpm(self, operation: str) -> None:
        now = self._clock()
        window_start = math.floor(now / RPM_WINDOW_S) * RPM_WINDOW_S
        if window_start != self._window_start:
            self._window_start = window_start
            self._window_count = 0

        if self._window_count >= self.max_rpm:
            retry_after = max(1, math.ceil(window_start + RPM_WINDOW_S - now))
            logger.warning(
                "erp_throttle_rpm",
                operation=operation,
                max_rpm=self.max_rpm,
                retry_after_seconds=retry_after,
                rpm_count=self._window_count,
            )
            raise RateLimitedError(
                "ERP rate limit exceeded", retry_after_seconds=retry_after
            )

        self._window_count += 1

    async def protect(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under the caps, per-operation timeout and retry loop."""
        started = self._clock()
        self._assert_within_concurrency(operation)
        self._assert_within_rpm(operation)

        timeout_s = self.settings.erp_timeout_s(operation)
        self.active += 1
        try:
            result = await retry_async(
                operation,
                lambda: with_timeout(fn(), timeout_s, operation),
                self.policy,
                sleep=self._sleep,
                rng=self._rng,
            )
        finally:
            self.active = max(0, self.active - 1)

        logger.info(
            "erp_call_succeeded",
            operation=operation,
            duration_ms=int((self._clock() - started) * 1000),
            active=self.active,
            rpm_count=self._window_count,
        )
        return result
