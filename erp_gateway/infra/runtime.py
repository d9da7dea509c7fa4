"""
Process-wide object graph.

Everything stateful (store, queue, ERP client, protection caps, governor) is
built here once per process and passed down explicitly.
"""

from dataclasses import dataclass

from fastapi import Depends, Request

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import QueueBackend, Settings
from erp_gateway.infra.database import Database
from erp_gateway.infra.queue import JobQueue, MemoryJobQueue, ServiceBusJobQueue
from erp_gateway.v1.core.rate_limit import AdmissionRateLimiter
from erp_gateway.v1.erp.client import AcumaticaClient
from erp_gateway.v1.erp.protection import UpstreamProtection
from erp_gateway.v1.erp.throttle import RateGovernor
from erp_gateway.v1.infra.jobs.coalescing import UpdateFlusher
from erp_gateway.v1.infra.jobs.dispatcher import JobDispatcher
from erp_gateway.v1.infra.jobs.registry_init import build_job_registry
from erp_gateway.v1.infra.jobs.service import JobService
from erp_gateway.v1.infra.jobs.store import JobStore, MemoryJobStore, SqlJobStore
from erp_gateway.v1.infra.jobs.worker import JobConsumer

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: JobStore
    queue: JobQueue
    service: JobService
    admission: AdmissionRateLimiter
    client: AcumaticaClient
    protection: UpstreamProtection
    database: Database | None = None
    consumer: JobConsumer | None = None

    async def close(self) -> None:
        await self.client.close()
        await self.queue.close()
        if self.database is not None:
            await self.database.close()


def build_consumer(
    settings: Settings,
    store: JobStore,
    queue: JobQueue,
    service: JobService,
    client: AcumaticaClient,
) -> JobConsumer:
    flusher = UpdateFlusher(settings, store, client, service)
    dispatcher = JobDispatcher(build_job_registry(client, flusher))
    return JobConsumer(settings, store, queue, RateGovernor.from_settings(settings), dispatcher)


def build_runtime(settings: Settings, with_consumer: bool = False) -> Runtime:
    """Wire the runtime for the configured queue backend.

    The memory backend keeps store and queue in process, so it always gets a
    consumer; otherwise one is built only when ``with_consumer`` is set.
    """
    database = None
    if settings.queue_backend == QueueBackend.MEMORY:
        store: JobStore = MemoryJobStore()
        queue: JobQueue = MemoryJobQueue()
        with_consumer = True
    else:
        database = Database(settings)
        store = SqlJobStore(database)
        queue = ServiceBusJobQueue(settings.servicebus_connection_string, settings.queue_name)

    service = JobService(settings, store, queue)
    client = AcumaticaClient(settings)
    runtime = Runtime(
        settings=settings,
        store=store,
        queue=queue,
        service=service,
        admission=AdmissionRateLimiter(store, settings),
        client=client,
        protection=UpstreamProtection(settings),
        database=database,
    )
    if with_consumer:
        runtime.consumer = build_consumer(settings, store, queue, service, client)

    logger.info(
        "runtime_built",
        queue_backend=settings.queue_backend.value,
        consumer=runtime.consumer is not None,
    )
    return runtime


async def run_worker(settings: Settings) -> None:
    """Run the queue consumer until cancelled."""
    runtime = build_runtime(settings, with_consumer=True)
    try:
        await runtime.consumer.start()
    finally:
        await runtime.consumer.stop()
        await runtime.close()


def get_runtime(request: Request) -> Runtime:
    """Dependency returning the runtime built by the app lifespan."""
    return request.app.state.runtime


# Convenience type alias for dependency injection
RuntimeDep = Depends(get_runtime)
