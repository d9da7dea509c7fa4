"""
Job system models: job records, idempotency keys, update buffers and
admission rate-limit windows.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    PrimaryKeyConstraint,
    SmallInteger,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from erp_gateway.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class JobType(str, Enum):
    GET_CUSTOMER = "GET_CUSTOMER"
    GET_OPPORTUNITY = "GET_OPPORTUNITY"
    CREATE_OPPORTUNITY = "CREATE_OPPORTUNITY"
    UPDATE_OPPORTUNITY = "UPDATE_OPPORTUNITY"
    ERP_GET_ORDER_HEADER = "ERP_GET_ORDER_HEADER"
    ERP_GET_PAYMENT_INFO = "ERP_GET_PAYMENT_INFO"
    ERP_GET_INVENTORY_DETAILS = "ERP_GET_INVENTORY_DETAILS"
    ERP_GET_ORDER_SUMMARIES = "ERP_GET_ORDER_SUMMARIES"
    ERP_GET_ORDER_SUMMARIES_DELTA = "ERP_GET_ORDER_SUMMARIES_DELTA"
    ERP_GET_ORDER_LAST_MODIFIED = "ERP_GET_ORDER_LAST_MODIFIED"
    ERP_VERIFY_CUSTOMER = "ERP_VERIFY_CUSTOMER"
    ERP_GET_ADDRESS_CONTACT = "ERP_GET_ADDRESS_CONTACT"
    ERP_GET_ORDER_READY_REPORT = "ERP_GET_ORDER_READY_REPORT"


class JobErrorCode(str, Enum):
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    UPSTREAM_TERMINAL = "UPSTREAM_TERMINAL"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    ENQUEUE_FAILED = "ENQUEUE_FAILED"


class Job(Base):
    """One unit of asynchronous work against the ERP."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    vendor_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Tenant tag of the requesting vendor"
    )
    type: Mapped[str] = mapped_column(Text, nullable=False, comment="JobType value")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|processing|succeeded|failed",
    )
    entity_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Business entity the job concerns"
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result: Mapped[Any | None] = mapped_column(
        JSON, nullable=True, comment="Set only on success"
    )
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message, truncated"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Machine-readable failure category"
    )
    attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Deliveries that claimed the job"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'succeeded', 'failed')",
            name="jobs_status_check",
        ),
        Index("ix_jobs_status_updated_at", "status", "updated_at"),
    )


class IdempotencyKey(Base):
    """Binds a caller-supplied key to the job it created."""

    __tablename__ = "idempotency_keys"

    vendor_id: Mapped[str] = mapped_column(Text, nullable=False)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (PrimaryKeyConstraint("vendor_id", "key", name="pk_idempotency_keys"),)


class UpdateBuffer(Base):
    """Latest pending update for one entity and the job that will flush it."""

    __tablename__ = "update_buffers"

    entity_id: Mapped[str] = mapped_column(Text, primary_key=True)
    latest_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_job_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Last write; optimistic guard for settling a flush",
    )


class RateLimitWindow(Base):
    """Fixed-window admission counter."""

    __tablename__ = "rate_limit_windows"

    vendor_id: Mapped[str] = mapped_column(Text, nullable=False)
    route_key: Mapped[str] = mapped_column(Text, nullable=False)
    window_start: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint(
            "vendor_id", "route_key", "window_start", name="pk_rate_limit_windows"
        ),
    )
