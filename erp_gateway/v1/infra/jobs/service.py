"""
Job service: records jobs durably and hands them to the queue.

A job row is always committed before its message is published, so a worker
can never receive a message for a job it cannot find. When the publish step
fails the job is marked ``failed`` with ``ENQUEUE_FAILED`` and the caller gets
``QueuePublishError``.
"""

import time
import uuid
from typing import Any

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.infra.queue import JobQueue
from erp_gateway.v1.core.exceptions import (
    DuplicateKeyError,
    QueuePublishError,
    ValidationError,
)
from erp_gateway.v1.infra.jobs.models import JobErrorCode, JobStatus, JobType
from erp_gateway.v1.infra.jobs.schemas import EnqueueInput, EnqueueResult, JobMessage
from erp_gateway.v1.infra.jobs.store import JobRecord, JobStore

logger = get_logger(__name__)


def truncate_error(message: str, limit: int) -> str:
    return message if len(message) <= limit else message[:limit]


class JobService:
    """Service for enqueueing and looking up ERP jobs."""

    def __init__(self, settings: Settings, store: JobStore, queue: JobQueue):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.vendor_id = settings.vendor_id

    def _new_job(
        self,
        job_type: JobType,
        entity_key: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> JobRecord:
        return JobRecord(
            id=str(uuid.uuid4()),
            vendor_id=self.vendor_id,
            type=job_type.value,
            status=JobStatus.QUEUED.value,
            entity_key=entity_key,
            payload=payload,
        )

    def _message_for(self, job: JobRecord, **fields: Any) -> JobMessage:
        return JobMessage(
            job_id=job.id,
            vendor_id=job.vendor_id,
            type=job.type,
            payload=job.payload,
            **fields,
        )

    async def _publish(self, message: JobMessage) -> None:
        """Send ``message``; on failure mark its job failed and raise."""
        started = time.monotonic()
        try:
            await self.queue.send(message)
        except Exception as exc:
            logger.error(
                "gateway_job_enqueue_failed",
                job_id=message.job_id,
                type=message.type,
                opportunity_id=message.opportunity_id,
                error=str(exc),
            )
            await self.store.fail_job(
                message.job_id,
                truncate_error(
                    f"Failed to enqueue: {exc}", self.settings.job_error_max_length
                ),
                JobErrorCode.ENQUEUE_FAILED,
            )
            raise QueuePublishError(
                "Job queue unavailable", details={"job_id": message.job_id}
            ) from exc

        logger.info(
            "gateway_job_enqueued",
            job_id=message.job_id,
            type=message.type,
            vendor_id=message.vendor_id,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def enqueue_job(self, request: EnqueueInput) -> EnqueueResult:
        """
        Record and publish one job.

        Creates with an idempotency key and opportunity updates are routed to
        their dedicated paths; everything else is a plain single-shot job.
        """
        if request.type == JobType.CREATE_OPPORTUNITY and request.idempotency_key:
            return await self.create_with_idempotency(
                request.payload or {}, request.idempotency_key
            )

        if request.type == JobType.UPDATE_OPPORTUNITY:
            if not request.opportunity_id:
                raise ValidationError("opportunity_id is required for updates")
            return await self.enqueue_coalesced_update(
                request.opportunity_id, request.payload or {}
            )

        job = self._new_job(request.type, request.entity_key, request.payload)
        await self.store.create_job(job)
        await self._publish(
            self._message_for(
                job,
                customer_id=request.customer_id,
                opportunity_id=request.opportunity_id,
                idempotency_key=request.idempotency_key,
            )
        )
        return EnqueueResult(job_id=job.id, reused=False)

    async def create_with_idempotency(
        self, payload: dict[str, Any], idempotency_key: str
    ) -> EnqueueResult:
        """Create at most one CREATE_OPPORTUNITY job per (vendor, key)."""
        existing = await self.store.find_job_by_idempotency_key(
            self.vendor_id, idempotency_key
        )
        if existing is not None:
            return await self._replay(existing, idempotency_key)

        job = self._new_job(JobType.CREATE_OPPORTUNITY, payload=payload)
        try:
            await self.store.create_job_with_idempotency_key(job, idempotency_key)
        except DuplicateKeyError:
            winner = await self.store.find_job_by_idempotency_key(
                self.vendor_id, idempotency_key
            )
            if winner is None:
                raise
            logger.info(
                "gateway_idempotency_race_reused",
                vendor_id=self.vendor_id,
                idempotency_key=idempotency_key,
                job_id=winner.id,
            )
            return EnqueueResult(job_id=winner.id, reused=True)

        await self._publish(self._message_for(job, idempotency_key=idempotency_key))
        return EnqueueResult(job_id=job.id, reused=False)

    async def _replay(self, job: JobRecord, idempotency_key: str) -> EnqueueResult:
        if (
            job.status == JobStatus.FAILED.value
            and job.error_code == JobErrorCode.ENQUEUE_FAILED.value
            and await self.store.reset_failed_enqueue(job.id)
        ):
            # Only a job whose message never reached the queue is republished
            logger.info(
                "gateway_idempotency_republished",
                vendor_id=self.vendor_id,
                idempotency_key=idempotency_key,
                job_id=job.id,
            )
            await self._publish(self._message_for(job, idempotency_key=idempotency_key))
        else:
            logger.info(
                "gateway_idempotency_reused",
                vendor_id=self.vendor_id,
                idempotency_key=idempotency_key,
                job_id=job.id,
            )
        return EnqueueResult(job_id=job.id, reused=True)

    async def enqueue_coalesced_update(
        self, opportunity_id: str, payload: dict[str, Any]
    ) -> EnqueueResult:
        """Merge into the entity's pending update or start a new flusher job."""
        job = self._new_job(JobType.UPDATE_OPPORTUNITY, entity_key=opportunity_id)
        outcome = await self.store.coalesce_update(job, payload)

        if outcome.reused:
            logger.info(
                "gateway_coalesced_update_reused",
                opportunity_id=opportunity_id,
                job_id=outcome.job_id,
            )
            return EnqueueResult(job_id=outcome.job_id, reused=True)

        logger.info(
            "gateway_coalesced_update_new_job",
            opportunity_id=opportunity_id,
            job_id=job.id,
        )
        try:
            await self._publish(self._message_for(job, opportunity_id=opportunity_id))
        except QueuePublishError:
            await self.store.release_update_buffer(opportunity_id, job.id)
            raise
        return EnqueueResult(job_id=job.id, reused=False)

    async def enqueue_follow_up(self, opportunity_id: str, current_job_id: str) -> str | None:
        """
        Queue another flush for an entity that changed while being flushed.

        Returns the follow-up job id, or ``None`` when the buffer is no longer
        pending and nothing needs flushing. If the publish fails the flusher
        role goes back to ``current_job_id`` and ``QueuePublishError`` is
        raised so the current delivery is retried.
        """
        job = self._new_job(JobType.UPDATE_OPPORTUNITY, entity_key=opportunity_id)
        if not await self.store.create_follow_up_job(job):
            return None

        try:
            await self._publish(self._message_for(job, opportunity_id=opportunity_id))
        except QueuePublishError:
            await self.store.assign_flusher(opportunity_id, current_job_id)
            raise

        logger.info(
            "coalesced_update_followup_enqueued",
            opportunity_id=opportunity_id,
            job_id=job.id,
            previous_job_id=current_job_id,
        )
        return job.id

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self.store.get_job(job_id)
