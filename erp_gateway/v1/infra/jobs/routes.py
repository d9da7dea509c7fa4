"""
Admission API: record a job, publish it and answer 202 with its id.

Every route counts against its admission window before enqueueing.
"""

from typing import Any

from fastapi import APIRouter, Body, Header, Path, status

from erp_gateway.infra.runtime import Runtime, RuntimeDep
from erp_gateway.v1.core.exceptions import (
    GatewayException,
    NotFoundError,
    ValidationError,
    create_success_response,
)
from erp_gateway.v1.core.security import ApiKeyDep
from erp_gateway.v1.infra.jobs.models import JobType
from erp_gateway.v1.infra.jobs.schemas import (
    EnqueueInput,
    EnqueueResult,
    ErpJobRequest,
    JobStatusResponse,
)

router = APIRouter(dependencies=[ApiKeyDep])


def _accepted(result: EnqueueResult) -> dict[str, Any]:
    return create_success_response(data=result.model_dump(by_alias=True))


@router.get("/customers/{customer_id}", status_code=status.HTTP_202_ACCEPTED, response_model=dict)
async def enqueue_get_customer(
    customer_id: str = Path(..., min_length=1, max_length=64), runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Queue a customer read."""
    await runtime.admission.check(runtime.settings.vendor_id, JobType.GET_CUSTOMER.value)
    result = await runtime.service.enqueue_job(
        EnqueueInput(type=JobType.GET_CUSTOMER, customer_id=customer_id)
    )
    return _accepted(result)


@router.get(
    "/opportunities/{opportunity_id}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=dict,
)
async def enqueue_get_opportunity(
    opportunity_id: str = Path(..., min_length=1, max_length=64), runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Queue an opportunity read."""
    await runtime.admission.check(runtime.settings.vendor_id, JobType.GET_OPPORTUNITY.value)
    result = await runtime.service.enqueue_job(
        EnqueueInput(type=JobType.GET_OPPORTUNITY, opportunity_id=opportunity_id)
    )
    return _accepted(result)


@router.post("/opportunities", status_code=status.HTTP_202_ACCEPTED, response_model=dict)
async def enqueue_create_opportunity(
    payload: dict[str, Any] = Body(...),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """Queue an opportunity create; replays of the same key return the first job."""
    if not idempotency_key or not idempotency_key.strip():
        raise GatewayException(
            "Idempotency-Key header is required",
            status.HTTP_400_BAD_REQUEST,
            code="BAD_REQUEST",
        )
    if not payload:
        raise ValidationError("Opportunity payload must not be empty")

    await runtime.admission.check(
        runtime.settings.vendor_id, JobType.CREATE_OPPORTUNITY.value
    )
    result = await runtime.service.create_with_idempotency(payload, idempotency_key.strip())
    return _accepted(result)


@router.put(
    "/opportunities/{opportunity_id}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=dict,
)
async def enqueue_update_opportunity(
    opportunity_id: str = Path(..., min_length=1, max_length=64),
    payload: dict[str, Any] = Body(...),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """Queue an opportunity update, merged with any update still pending."""
    if not payload:
        raise ValidationError("Opportunity payload must not be empty")

    await runtime.admission.check(
        runtime.settings.vendor_id, JobType.UPDATE_OPPORTUNITY.value
    )
    result = await runtime.service.enqueue_coalesced_update(opportunity_id, payload)
    return _accepted(result)


@router.post("/erp/jobs", status_code=status.HTTP_202_ACCEPTED, response_model=dict)
async def enqueue_erp_job(
    request: ErpJobRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Queue an ERP read job."""
    await runtime.admission.check(runtime.settings.vendor_id, "ERP_JOBS")
    result = await runtime.service.enqueue_job(
        EnqueueInput(type=request.type, payload=request.payload)
    )
    return _accepted(result)


@router.get("/jobs/{job_id}", response_model=dict)
async def get_job(
    job_id: str = Path(..., min_length=1), runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Get a job's status, and its result once it has succeeded."""
    job = await runtime.service.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    projection = JobStatusResponse.model_validate(job)
    return create_success_response(data=projection.model_dump(mode="json", by_alias=True))
