"""
Job system Pydantic schemas: the queue message, enqueue inputs/results and
API projections.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator
from pydantic.alias_generators import to_camel

from erp_gateway.v1.infra.jobs.models import JobStatus, JobType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobMessage(CamelModel):
    """Body of a queued job message, camelCase on the wire."""

    job_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    customer_id: str | None = None
    opportunity_id: str | None = None
    idempotency_key: str | None = None
    payload: dict[str, Any] | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EnqueueInput(BaseModel):
    """Normalized request handed over by the admission API."""

    type: JobType
    customer_id: str | None = None
    opportunity_id: str | None = None
    idempotency_key: str | None = None
    payload: dict[str, Any] | None = None

    @property
    def entity_key(self) -> str | None:
        return self.customer_id or self.opportunity_id


class EnqueueResult(CamelModel):
    job_id: str
    reused: bool = False


class JobStatusResponse(CamelModel):
    """Projection of a job for status polling."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    job_id: str = Field(validation_alias="id")
    vendor_id: str
    type: str
    status: JobStatus
    result: Any | None = None
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime


class ErpJobRequest(BaseModel):
    """Admission body for ERP read jobs."""

    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _erp_types_only(cls, value: JobType) -> JobType:
        if not value.value.startswith("ERP_"):
            raise ValueError("only ERP_* job types are accepted here")
        return value


class VerifyCustomerRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)
    zip_code: str = Field(..., min_length=5, max_length=10)


class OrderRowsRequest(CamelModel):
    """A customer's orders, optionally narrowed to specific order numbers."""

    baid: str = Field(..., min_length=1, max_length=64)
    order_nbrs: list[str] = Field(default_factory=list)

    @field_validator("baid")
    @classmethod
    def _normalize_baid(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("baid is required")
        return value

    @field_validator("order_nbrs")
    @classmethod
    def _normalize_order_nbrs(cls, values: list[str]) -> list[str]:
        cleaned = (value.strip().upper() for value in values)
        return list(dict.fromkeys(value for value in cleaned if value))


class AddressContactRequest(OrderRowsRequest):
    cutoff_literal: str | None = None
    use_order_by: bool = False
    page_size: PositiveInt = 500
