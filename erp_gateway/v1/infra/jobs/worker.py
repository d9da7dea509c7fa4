"""
Queue consumer that runs ERP jobs.

Each delivery is claimed in the store, run under the rate governor and then
settled exactly once: completed on success or terminal failure, abandoned for
a transient failure (redelivery is the retry), dead-lettered when the message
is unusable or the delivery ceiling is reached.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from erp_gateway.config.logging import get_logger, job_context
from erp_gateway.config.settings import Settings
from erp_gateway.infra.queue import JobQueue, ReceivedJobMessage
from erp_gateway.v1.core.exceptions import MalformedMessageError
from erp_gateway.v1.erp.retry import RetryPolicy, compute_backoff_delay, is_transient_error
from erp_gateway.v1.erp.throttle import RateGovernor
from erp_gateway.v1.infra.jobs.dispatcher import JobDispatcher
from erp_gateway.v1.infra.jobs.models import JobErrorCode, JobType
from erp_gateway.v1.infra.jobs.schemas import JobMessage
from erp_gateway.v1.infra.jobs.service import truncate_error
from erp_gateway.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

STOP_DRAIN_TIMEOUT_S = 30
RECEIVE_ERROR_BACKOFF_S = 5


def parse_job_message(body: str | bytes) -> JobMessage:
    """Parse a queue body, raising ``MalformedMessageError`` for anything unusable."""
    try:
        return JobMessage.model_validate_json(body)
    except ValueError as exc:
        # pydantic ValidationError and UnicodeDecodeError
        raise MalformedMessageError(str(exc)) from exc


class MessageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class JobConsumer:
    """
    Peek-lock consumer for the job queue.

    Up to ``max_concurrent_deliveries`` messages are handled at once as
    tasks; the governor further limits how many reach the ERP.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        queue: JobQueue,
        governor: RateGovernor,
        dispatcher: JobDispatcher,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.governor = governor
        self.dispatcher = dispatcher
        self.policy = RetryPolicy.from_settings(settings)
        self.max_concurrent_deliveries = settings.max_concurrent_deliveries
        self.running = False
        self.active_tasks: set[asyncio.Task] = set()
        self._sleep = sleep
        self._rng = rng

    async def handle_message(self, received: ReceivedJobMessage) -> MessageOutcome:
        """Process one delivery and settle it."""
        started = time.monotonic()

        try:
            message = parse_job_message(received.body)
        except MalformedMessageError as exc:
            logger.error(
                "job_message_malformed",
                message_id=received.message_id,
                delivery_count=received.delivery_count,
                error=str(exc),
            )
            await self.queue.dead_letter(received, exc.code, exc.message)
            return MessageOutcome.REJECTED

        with job_context(message.job_id, message.vendor_id, message.type):
            return await self._run(received, message, started)

    async def _run(
        self, received: ReceivedJobMessage, message: JobMessage, started: float
    ) -> MessageOutcome:
        logger.info("job_received", delivery_count=received.delivery_count)

        claim = await self.store.claim_job(message.job_id)
        if claim.job is None:
            logger.error("job_not_found")
            await self.queue.dead_letter(
                received, "JOB_NOT_FOUND", f"No job record for {message.job_id}"
            )
            return MessageOutcome.REJECTED
        if not claim.claimed:
            logger.info("job_already_terminal", status=claim.job.status)
            await self.queue.complete(received)
            return MessageOutcome.SKIPPED

        try:
            async with self.governor.permit(message.vendor_id):
                result = await self.dispatcher.dispatch(message)
        except Exception as error:
            return await self._settle_failure(received, message, error, started)

        await self.store.mark_succeeded(message.job_id, result)
        await self.queue.complete(received)
        logger.info(
            "job_succeeded",
            duration_ms=int((time.monotonic() - started) * 1000),
            outcome=MessageOutcome.SUCCEEDED.value,
        )
        return MessageOutcome.SUCCEEDED

    async def _settle_failure(
        self,
        received: ReceivedJobMessage,
        message: JobMessage,
        error: Exception,
        started: float,
    ) -> MessageOutcome:
        transient = is_transient_error(error)
        error_text = truncate_error(
            str(error) or error.__class__.__name__, self.settings.job_error_max_length
        )

        if transient and received.delivery_count < self.settings.job_max_delivery_count:
            await self.store.requeue_job(message.job_id, error_text)
            delay = compute_backoff_delay(received.delivery_count, self.policy, self._rng)
            logger.warning(
                "job_retry_scheduled",
                delivery_count=received.delivery_count,
                delay_ms=int(delay * 1000),
                error=error_text,
            )
            await self._sleep(delay)
            await self.queue.abandon(received)
            outcome = MessageOutcome.RETRY
        elif transient:
            await self.store.fail_job(
                message.job_id, error_text, JobErrorCode.RETRIES_EXHAUSTED
            )
            await self._release_update_buffer(message)
            await self.queue.dead_letter(received, "MAX_DELIVERY_EXCEEDED", error_text)
            outcome = MessageOutcome.FAILED
        else:
            await self.store.fail_job(
                message.job_id, error_text, JobErrorCode.UPSTREAM_TERMINAL
            )
            await self._release_update_buffer(message)
            await self.queue.complete(received)
            outcome = MessageOutcome.FAILED

        logger.error(
            "job_failed",
            duration_ms=int((time.monotonic() - started) * 1000),
            outcome=outcome.value,
            retryable=transient,
            delivery_count=received.delivery_count,
            error=error_text,
        )
        return outcome

    async def _release_update_buffer(self, message: JobMessage) -> None:
        if message.type == JobType.UPDATE_OPPORTUNITY.value and message.opportunity_id:
            await self.store.release_update_buffer(message.opportunity_id, message.job_id)

    async def _process(self, received: ReceivedJobMessage) -> None:
        try:
            await self.handle_message(received)
        except Exception:
            logger.exception(
                "job_message_handling_failed",
                message_id=received.message_id,
                delivery_count=received.delivery_count,
            )
            try:
                await self.queue.abandon(received)
            except Exception:
                logger.exception("job_message_abandon_failed", message_id=received.message_id)

    async def start(self) -> None:
        """Receive and process messages until ``stop`` is called."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        logger.info(
            "job_worker_started",
            max_concurrent_deliveries=self.max_concurrent_deliveries,
            job_max_delivery_count=self.settings.job_max_delivery_count,
        )

        try:
            while self.running:
                capacity = self.max_concurrent_deliveries - len(self.active_tasks)
                if capacity <= 0:
                    await asyncio.wait(self.active_tasks, return_when=asyncio.FIRST_COMPLETED)
                    continue

                try:
                    batch = await self.queue.receive(
                        capacity, self.settings.worker_receive_wait_s
                    )
                except Exception:
                    logger.exception("job_receive_failed")
                    await self._sleep(RECEIVE_ERROR_BACKOFF_S)
                    continue

                for received in batch:
                    task = asyncio.create_task(self._process(received))
                    self.active_tasks.add(task)
                    task.add_done_callback(self.active_tasks.discard)
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop receiving and wait for in-flight messages."""
        logger.info("job_worker_stopping", active_tasks=len(self.active_tasks))
        self.running = False

        if self.active_tasks:
            _, pending = await asyncio.wait(
                set(self.active_tasks), timeout=STOP_DRAIN_TIMEOUT_S
            )
            if pending:
                logger.warning("job_worker_stopped_with_active_tasks", active_tasks=len(pending))
