"""
Flush protocol for coalesced opportunity updates.

The flusher job waits until its entity's buffer has been quiet for the
coalescing window, sends the latest payload once, then settles the buffer
only if nobody wrote to it in the meantime. A write that lands during the
upstream call leaves the buffer pending and gets its own follow-up job.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import JobPayloadError
from erp_gateway.v1.erp.client import AcumaticaClient
from erp_gateway.v1.infra.jobs.models import utcnow
from erp_gateway.v1.infra.jobs.service import JobService
from erp_gateway.v1.infra.jobs.store import JobStore, UpdateBufferSnapshot

logger = get_logger(__name__)

MIN_DEBOUNCE_SLEEP_S = 0.025


class UpdateFlusher:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        client: AcumaticaClient,
        service: JobService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.window_s = settings.update_coalesce_window_ms / 1000
        self.store = store
        self.client = client
        self.service = service
        self._sleep = sleep
        self._now = now

    async def wait_for_quiet_buffer(
        self, entity_id: str, job_id: str
    ) -> UpdateBufferSnapshot | None:
        """Poll until the buffer owned by ``job_id`` is older than the window.

        Returns ``None`` as soon as the buffer is gone, settled or owned by
        another job.
        """
        iterations = 0
        total_wait_s = 0.0
        while True:
            buffer = await self.store.get_update_buffer(entity_id)
            if buffer is None or not buffer.pending or buffer.last_job_id != job_id:
                return None

            age_s = (self._now() - buffer.updated_at).total_seconds()
            if age_s >= self.window_s:
                if iterations:
                    logger.info(
                        "coalesced_update_debounce_wait_completed",
                        opportunity_id=entity_id,
                        wait_iterations=iterations,
                        total_wait_ms=int(total_wait_s * 1000),
                    )
                return buffer

            delay = max(self.window_s - age_s, MIN_DEBOUNCE_SLEEP_S)
            iterations += 1
            total_wait_s += delay
            await self._sleep(delay)

    async def flush(
        self, entity_id: str, job_id: str, fallback_payload: dict[str, Any] | None = None
    ) -> Any:
        buffer = await self.wait_for_quiet_buffer(entity_id, job_id)

        if buffer is None:
            if fallback_payload:
                return await self.client.update_opportunity(entity_id, fallback_payload)

            current = await self.store.get_update_buffer(entity_id)
            if (
                current is not None
                and current.pending
                and current.last_job_id not in (None, job_id)
            ):
                logger.info(
                    "coalesced_update_superseded",
                    opportunity_id=entity_id,
                    job_id=job_id,
                    flusher_job_id=current.last_job_id,
                )
                return {"status": "superseded"}
            raise JobPayloadError(
                f"No buffered payload found for opportunity {entity_id}",
                details={"opportunity_id": entity_id},
            )

        logger.info(
            "coalesced_update_processing",
            opportunity_id=entity_id,
            job_id=job_id,
            updated_at=buffer.updated_at.isoformat(),
        )
        result = await self.client.update_opportunity(entity_id, buffer.latest_payload)

        if not await self.store.settle_update_buffer(entity_id, buffer.updated_at):
            logger.warning(
                "coalesced_update_superseded_requeue", opportunity_id=entity_id, job_id=job_id
            )
            await self.service.enqueue_follow_up(entity_id, job_id)

        return result
