from datetime import UTC, datetime

import pytest

from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import RateLimitedError
from erp_gateway.v1.core.rate_limit import AdmissionRateLimiter


class FrozenNow:
    def __init__(self, at: datetime):
        self.at = at

    def __call__(self) -> datetime:
        return self.at


@pytest.fixture
def now():
    return FrozenNow(datetime(2026, 10, 18, 12, 0, 20, tzinfo=UTC))


@pytest.fixture
def limiter(store, now):
    settings = Settings(rate_limit_window_seconds=60, rate_limit_by_route={"GET_CUSTOMER": 3})
    return AdmissionRateLimiter(store, settings, now=now)


def test_window_start_is_aligned(limiter):
    at = datetime(2026, 10, 18, 12, 0, 59, tzinfo=UTC)

    assert limiter.window_start(at) == datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_requests_within_limit_are_counted(limiter):
    counts = [await limiter.check("specbooks", "GET_CUSTOMER") for _ in range(3)]

    assert counts == [1, 2, 3]


@pytest.mark.asyncio
async def test_request_over_limit_is_rejected_with_retry_after(limiter):
    for _ in range(3):
        await limiter.check("specbooks", "GET_CUSTOMER")

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.check("specbooks", "GET_CUSTOMER")

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after_seconds == 40
    assert exc_info.value.details["route_key"] == "GET_CUSTOMER"
    assert exc_info.value.details["limit"] == 3


@pytest.mark.asyncio
async def test_counters_are_per_vendor_and_route(limiter):
    for _ in range(3):
        await limiter.check("specbooks", "GET_CUSTOMER")

    assert await limiter.check("other-vendor", "GET_CUSTOMER") == 1
    assert await limiter.check("specbooks", "GET_OPPORTUNITY") == 1


@pytest.mark.asyncio
async def test_new_window_resets_count(limiter, now):
    for _ in range(3):
        await limiter.check("specbooks", "GET_CUSTOMER")

    now.at = datetime(2026, 10, 18, 12, 1, 0, tzinfo=UTC)

    assert await limiter.check("specbooks", "GET_CUSTOMER") == 1
