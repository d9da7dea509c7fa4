"""
Transient-error classification, exponential backoff and in-process retries.

The queued path never calls ``retry_async``: a queued job retries through
message redelivery and only uses ``is_transient_error`` and
``compute_backoff_delay`` from here.
"""

import asyncio
import random
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import UpstreamTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")

TRANSPORT_ERROR_SIGNATURES = (
    "etimedout",
    "econnreset",
    "enotfound",
    "timeout",
    "timed out",
    "connection reset",
    "name or service not known",
    "temporary failure in name resolution",
    "fetch failed",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.3
    max_delay_s: float = 2.5
    jitter_s: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.erp_retry_max_attempts,
            base_delay_s=settings.erp_retry_base_ms / 1000,
            max_delay_s=settings.erp_retry_max_ms / 1000,
            jitter_s=settings.erp_retry_jitter_ms / 1000,
        )


def error_status_code(error: BaseException) -> int | None:
    """Status code carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def is_transient_error(error: BaseException) -> bool:
    """True when retrying the failed call can reasonably succeed."""
    status_code = error_status_code(error)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code <= 599

    if isinstance(
        error,
        (httpx.TransportError, asyncio.TimeoutError, ConnectionError, socket.gaierror),
    ):
        return True

    message = str(error).lower()
    return any(signature in message for signature in TRANSPORT_ERROR_SIGNATURES)


def compute_backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-indexed)."""
    exponential = policy.base_delay_s * (2 ** max(0, attempt - 1))
    jitter = rng() * policy.jitter_s
    return min(policy.max_delay_s, exponential + jitter)


async def with_timeout(awaitable: Awaitable[T], timeout_s: float, operation: str) -> T:
    """Await with a deadline; an expired deadline surfaces as a 504."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        raise UpstreamTimeoutError(operation, timeout_s) from exc


async def retry_async(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Call ``fn`` until it succeeds, fails terminally or exhausts the policy.

    Terminal errors are raised on first sight; the last transient error is
    raised once ``policy.max_attempts`` calls have been made.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await fn()
        except Exception as error:
            transient = is_transient_error(error)
            if not transient or attempt >= policy.max_attempts:
                logger.error(
                    "erp_call_failed",
                    operation=operation,
                    attempt=attempt,
                    status=error_status_code(error),
                    transient=transient,
                    error=str(error),
                )
                raise

            delay = compute_backoff_delay(attempt, policy, rng)
            logger.warning(
                "erp_call_retry",
                operation=operation,
                attempt=attempt,
                delay_ms=int(delay * 1000),
                error=str(error),
            )
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info("erp_call_recovered", operation=operation, attempt=attempt)
        return result
