import time
from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from erp_gateway.infra.runtime import Runtime, RuntimeDep
from erp_gateway.v1.core.exceptions import create_success_response
from erp_gateway.v1.core.security import ApiKeyDep
from erp_gateway.v1.infra.jobs.store import JobStore

router = APIRouter(dependencies=[ApiKeyDep])


class StoreHealth(BaseModel):
    """Job store health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """In-process consumer status, when this process runs one."""

    running: bool
    active_tasks: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(runtime: Runtime = RuntimeDep):
    """Health check with job store connectivity."""
    settings = runtime.settings
    store_health = await _check_store_health(runtime.store)

    worker_health = None
    if runtime.consumer is not None:
        worker_health = WorkerHealth(
            running=runtime.consumer.running,
            active_tasks=len(runtime.consumer.active_tasks),
        )

    health_data = {
        "ok": store_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "queue_backend": settings.queue_backend.value,
        "timestamp": datetime.now(UTC).isoformat(),
        "store": store_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_store_health(store: JobStore) -> StoreHealth:
    """Check store connectivity and response time."""
    started = time.perf_counter()
    try:
        await store.ping()
    except Exception as e:
        return StoreHealth(connected=False, error=str(e))

    return StoreHealth(
        connected=True,
        response_time_ms=round((time.perf_counter() - started) * 1000, 2),
    )
