"""
Fixed-window admission limits per vendor and route.

Counters live in the job store so every gateway instance shares them.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import RateLimitedError
from erp_gateway.v1.infra.jobs.models import utcnow
from erp_gateway.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

NEAR_THRESHOLD_RATIO = 0.8


class AdmissionRateLimiter:
    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self._now = now

    def window_start(self, at: datetime) -> datetime:
        window_s = self.settings.rate_limit_window_seconds
        start = math.floor(at.timestamp() / window_s) * window_s
        return datetime.fromtimestamp(start, UTC)

    async def check(self, vendor_id: str, route_key: str) -> int:
        """Count one request; raise ``RateLimitedError`` above the route limit."""
        now = self._now()
        window_start = self.window_start(now)
        limit = self.settings.rate_limit_for(route_key)

        count = await self.store.increment_rate_window(vendor_id, route_key, window_start)

        usage = count / limit
        if NEAR_THRESHOLD_RATIO <= usage < 1:
            logger.info(
                "gateway_rate_limit_near_threshold",
                vendor_id=vendor_id,
                route_key=route_key,
                count=count,
                limit=limit,
            )

        if count > limit:
            window_end = window_start.timestamp() + self.settings.rate_limit_window_seconds
            retry_after = max(1, math.ceil(window_end - now.timestamp()))
            logger.warning(
                "gateway_rate_limit_exceeded",
                vendor_id=vendor_id,
                route_key=route_key,
                count=count,
                limit=limit,
                retry_after_seconds=retry_after,
            )
            raise RateLimitedError(
                "Rate limit exceeded",
                retry_after_seconds=retry_after,
                details={"route_key": route_key, "limit": limit},
            )

        return count
