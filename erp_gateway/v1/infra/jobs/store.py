"""
Durable job store.

``SqlJobStore`` is the production implementation over SQLAlchemy async;
``MemoryJobStore`` keeps the same contract in process for local runs and
tests. Both rely only on uniqueness and compare-on-write updates for
concurrency control: a losing writer gets ``DuplicateKeyError`` or a
``False`` result and re-reads the winner.
"""

import asyncio
import copy
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError

from erp_gateway.infra.database import Database
from erp_gateway.v1.core.exceptions import DuplicateKeyError
from erp_gateway.v1.infra.jobs.models import (
    IdempotencyKey,
    Job,
    JobErrorCode,
    JobStatus,
    RateLimitWindow,
    UpdateBuffer,
    utcnow,
)

# Transaction runs for a coalesced enqueue; a lost race re-runs and then sees the winner
COALESCE_ATTEMPTS = 3


@dataclass(frozen=True)
class JobRecord:
    id: str
    vendor_id: str
    type: str
    status: str = JobStatus.QUEUED.value
    entity_key: str | None = None
    payload: dict[str, Any] | None = None
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UpdateBufferSnapshot:
    entity_id: str
    latest_payload: dict[str, Any]
    pending: bool
    last_job_id: str | None
    updated_at: datetime


@dataclass(frozen=True)
class ClaimOutcome:
    job: JobRecord | None
    claimed: bool


@dataclass(frozen=True)
class CoalesceOutcome:
    job_id: str
    reused: bool


class JobStore(Protocol):
    async def ping(self) -> None:
        ...

    async def create_job(self, job: JobRecord) -> None:
        ...

    async def create_job_with_idempotency_key(self, job: JobRecord, key: str) -> None:
        """Create the job and bind ``(job.vendor_id, key)`` to it atomically.

        Raises ``DuplicateKeyError`` when the key is already bound.
        """
        ...

    async def find_job_by_idempotency_key(self, vendor_id: str, key: str) -> JobRecord | None:
        ...

    async def get_job(self, job_id: str) -> JobRecord | None:
        ...

    async def claim_job(self, job_id: str) -> ClaimOutcome:
        """Move a queued (or abandoned processing) job to processing."""
        ...

    async def mark_succeeded(self, job_id: str, result: Any) -> None:
        ...

    async def requeue_job(self, job_id: str, error: str) -> None:
        ...

    async def fail_job(self, job_id: str, error: str, error_code: JobErrorCode) -> None:
        ...

    async def reset_failed_enqueue(self, job_id: str) -> bool:
        """Put a job whose message was never published back to queued."""
        ...

    async def coalesce_update(self, job: JobRecord, payload: dict[str, Any]) -> CoalesceOutcome:
        """Merge into the pending buffer of ``job.entity_key`` or make ``job`` its flusher."""
        ...

    async def get_update_buffer(self, entity_id: str) -> UpdateBufferSnapshot | None:
        ...

    async def settle_update_buffer(self, entity_id: str, updated_at: datetime) -> bool:
        """Clear ``pending`` only if nothing was written since ``updated_at``."""
        ...

    async def release_update_buffer(self, entity_id: str, job_id: str) -> bool:
        """Clear ``pending`` if ``job_id`` is still the flusher."""
        ...

    async def create_follow_up_job(self, job: JobRecord) -> bool:
        """Create ``job`` and make it the flusher of its still-pending buffer."""
        ...

    async def assign_flusher(self, entity_id: str, job_id: str) -> None:
        ...

    async def increment_rate_window(
        self, vendor_id: str, route_key: str, window_start: datetime
    ) -> int:
        ...


class _BufferContended(Exception):
    pass


def _job_row(job: JobRecord) -> Job:
    now = utcnow()
    return Job(
        id=job.id,
        vendor_id=job.vendor_id,
        type=job.type,
        status=job.status,
        entity_key=job.entity_key,
        payload=job.payload,
        attempts=job.attempts,
        created_at=job.created_at or now,
        updated_at=job.updated_at or now,
    )


def _job_record(row: Job) -> JobRecord:
    return JobRecord(
        id=row.id,
        vendor_id=row.vendor_id,
        type=row.type,
        status=row.status,
        entity_key=row.entity_key,
        payload=row.payload,
        result=row.result,
        error=row.error,
        error_code=row.error_code,
        attempts=row.attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _buffer_snapshot(row: UpdateBuffer) -> UpdateBufferSnapshot:
    return UpdateBufferSnapshot(
        entity_id=row.entity_id,
        latest_payload=row.latest_payload,
        pending=row.pending,
        last_job_id=row.last_job_id,
        updated_at=row.updated_at,
    )


class SqlJobStore:
    """Job store over SQLAlchemy async sessions (PostgreSQL)."""

    def __init__(self, database: Database):
        self.database = database
        self._sessions = database.SessionLocal

    async def ping(self) -> None:
        await self.database.ping()

    async def create_job(self, job: JobRecord) -> None:
        async with self._sessions() as session, session.begin():
            session.add(_job_row(job))

    async def create_job_with_idempotency_key(self, job: JobRecord, key: str) -> None:
        try:
            async with self._sessions() as session, session.begin():
                session.add(_job_row(job))
                session.add(IdempotencyKey(vendor_id=job.vendor_id, key=key, job_id=job.id))
        except IntegrityError as exc:
            raise DuplicateKeyError(f"idempotency key already bound: {key}") from exc

    async def find_job_by_idempotency_key(self, vendor_id: str, key: str) -> JobRecord | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Job)
                .join(IdempotencyKey, IdempotencyKey.job_id == Job.id)
                .where(IdempotencyKey.vendor_id == vendor_id, IdempotencyKey.key == key)
            )
            row = result.scalar_one_or_none()
            return _job_record(row) if row else None

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._sessions() as session:
            row = await session.get(Job, job_id)
            return _job_record(row) if row else None

    async def claim_job(self, job_id: str) -> ClaimOutcome:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=Job.attempts + 1,
                    updated_at=utcnow(),
                )
                .returning(Job)
            )
            row = result.scalar_one_or_none()
            if row is not None:
                return ClaimOutcome(job=_job_record(row), claimed=True)

            existing = await session.get(Job, job_id)
            return ClaimOutcome(job=_job_record(existing) if existing else None, claimed=False)

    async def _update_job(self, job_id: str, **values: Any) -> int:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Job).where(Job.id == job_id).values(updated_at=utcnow(), **values)
            )
            return result.rowcount

    async def mark_succeeded(self, job_id: str, result: Any) -> None:
        await self._update_job(
            job_id,
            status=JobStatus.SUCCEEDED.value,
            result=result,
            error=None,
            error_code=None,
        )

    async def requeue_job(self, job_id: str, error: str) -> None:
        await self._update_job(
            job_id,
            status=JobStatus.QUEUED.value,
            error=error,
            error_code=JobErrorCode.RETRY_SCHEDULED.value,
        )

    async def fail_job(self, job_id: str, error: str, error_code: JobErrorCode) -> None:
        await self._update_job(
            job_id, status=JobStatus.FAILED.value, error=error, error_code=error_code.value
        )

    async def reset_failed_enqueue(self, job_id: str) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.FAILED.value,
                    Job.error_code == JobErrorCode.ENQUEUE_FAILED.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    error=None,
                    error_code=None,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    async def coalesce_update(self, job: JobRecord, payload: dict[str, Any]) -> CoalesceOutcome:
        entity_id = job.entity_key
        for _ in range(COALESCE_ATTEMPTS):
            try:
                async with self._sessions() as session, session.begin():
                    now = utcnow()
                    buffer = await session.get(UpdateBuffer, entity_id)

                    if buffer is not None and buffer.pending and buffer.last_job_id:
                        merged = await session.execute(
                            update(UpdateBuffer)
                            .where(
                                UpdateBuffer.entity_id == entity_id,
                                UpdateBuffer.pending.is_(True),
                            )
                            .values(
                                latest_payload=payload,
                                updated_at=func.greatest(
                                    now, UpdateBuffer.updated_at + timedelta(microseconds=1)
                                ),
                            )
                            .returning(UpdateBuffer.last_job_id)
                        )
                        flusher_id = merged.scalar_one_or_none()
                        if flusher_id is None:
                            raise _BufferContended
                        return CoalesceOutcome(job_id=flusher_id, reused=True)

                    if buffer is None:
                        session.add(
                            UpdateBuffer(
                                entity_id=entity_id,
                                latest_payload=payload,
                                pending=True,
                                last_job_id=job.id,
                                updated_at=now,
                            )
                        )
                        await session.flush()
                    else:
                        claimed = await session.execute(
                            update(UpdateBuffer)
                            .where(
                                UpdateBuffer.entity_id == entity_id,
                                or_(
                                    UpdateBuffer.pending.is_(False),
                                    UpdateBuffer.last_job_id.is_(None),
                                ),
                            )
                            .values(
                                latest_payload=payload,
                                pending=True,
                                last_job_id=job.id,
                                updated_at=now,
                            )
                        )
                        if claimed.rowcount != 1:
                            raise _BufferContended

                    session.add(_job_row(job))
                return CoalesceOutcome(job_id=job.id, reused=False)
            except (IntegrityError, _BufferContended):
                continue

        raise DuplicateKeyError(f"update buffer stayed contended: {entity_id}")

    async def get_update_buffer(self, entity_id: str) -> UpdateBufferSnapshot | None:
        async with self._sessions() as session:
            row = await session.get(UpdateBuffer, entity_id)
            return _buffer_snapshot(row) if row else None

    async def settle_update_buffer(self, entity_id: str, updated_at: datetime) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(UpdateBuffer)
                .where(
                    UpdateBuffer.entity_id == entity_id,
                    UpdateBuffer.pending.is_(True),
                    UpdateBuffer.updated_at == updated_at,
                )
                .values(pending=False)
            )
            return result.rowcount == 1

    async def release_update_buffer(self, entity_id: str, job_id: str) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(UpdateBuffer)
                .where(
                    UpdateBuffer.entity_id == entity_id,
                    UpdateBuffer.pending.is_(True),
                    UpdateBuffer.last_job_id == job_id,
                )
                .values(pending=False)
            )
            return result.rowcount == 1

    async def create_follow_up_job(self, job: JobRecord) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(UpdateBuffer)
                .where(
                    UpdateBuffer.entity_id == job.entity_key,
                    UpdateBuffer.pending.is_(True),
                )
                .values(last_job_id=job.id)
            )
            if result.rowcount != 1:
                return False
            session.add(_job_row(job))
            return True

    async def assign_flusher(self, entity_id: str, job_id: str) -> None:
        async with self._sessions() as session, session.begin():
            await session.execute(
                update(UpdateBuffer)
                .where(UpdateBuffer.entity_id == entity_id, UpdateBuffer.pending.is_(True))
                .values(last_job_id=job_id)
            )

    async def increment_rate_window(
        self, vendor_id: str, route_key: str, window_start: datetime
    ) -> int:
        stmt = pg_insert(RateLimitWindow).values(
            vendor_id=vendor_id, route_key=route_key, window_start=window_start, count=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["vendor_id", "route_key", "window_start"],
            set_={"count": RateLimitWindow.count + 1},
        ).returning(RateLimitWindow.count)

        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
            return result.scalar_one()


class MemoryJobStore:
    """In-process job store; every operation is atomic under one lock."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self.idempotency_keys: dict[tuple[str, str], str] = {}
        self.buffers: dict[str, UpdateBufferSnapshot] = {}
        self.rate_windows: dict[tuple[str, str, datetime], int] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> None:
        return None

    def _insert_job(self, job: JobRecord) -> None:
        if job.id in self.jobs:
            raise DuplicateKeyError(f"job already exists: {job.id}")
        now = utcnow()
        self.jobs[job.id] = replace(
            job,
            payload=copy.deepcopy(job.payload),
            created_at=job.created_at or now,
            updated_at=job.updated_at or now,
        )

    def _update_job(self, job_id: str, **values: Any) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        self.jobs[job_id] = replace(job, updated_at=utcnow(), **values)
        return True

    async def create_job(self, job: JobRecord) -> None:
        async with self._lock:
            self._insert_job(job)

    async def create_job_with_idempotency_key(self, job: JobRecord, key: str) -> None:
        async with self._lock:
            if (job.vendor_id, key) in self.idempotency_keys:
                raise DuplicateKeyError(f"idempotency key already bound: {key}")
            self._insert_job(job)
            self.idempotency_keys[(job.vendor_id, key)] = job.id

    async def find_job_by_idempotency_key(self, vendor_id: str, key: str) -> JobRecord | None:
        async with self._lock:
            job_id = self.idempotency_keys.get((vendor_id, key))
            return self.jobs.get(job_id) if job_id else None

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            return self.jobs.get(job_id)

    async def claim_job(self, job_id: str) -> ClaimOutcome:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                return ClaimOutcome(job=None, claimed=False)
            if job.status not in (JobStatus.QUEUED.value, JobStatus.PROCESSING.value):
                return ClaimOutcome(job=job, claimed=False)
            self._update_job(
                job_id, status=JobStatus.PROCESSING.value, attempts=job.attempts + 1
            )
            return ClaimOutcome(job=self.jobs[job_id], claimed=True)

    async def mark_succeeded(self, job_id: str, result: Any) -> None:
        async with self._lock:
            self._update_job(
                job_id,
                status=JobStatus.SUCCEEDED.value,
                result=copy.deepcopy(result),
                error=None,
                error_code=None,
            )

    async def requeue_job(self, job_id: str, error: str) -> None:
        async with self._lock:
            self._update_job(
                job_id,
                status=JobStatus.QUEUED.value,
                error=error,
                error_code=JobErrorCode.RETRY_SCHEDULED.value,
            )

    async def fail_job(self, job_id: str, error: str, error_code: JobErrorCode) -> None:
        async with self._lock:
            self._update_job(
                job_id, status=JobStatus.FAILED.value, error=error, error_code=error_code.value
            )

    async def reset_failed_enqueue(self, job_id: str) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if (
                job is None
                or job.status != JobStatus.FAILED.value
                or job.error_code != JobErrorCode.ENQUEUE_FAILED.value
            ):
                return False
            return self._update_job(
                job_id, status=JobStatus.QUEUED.value, error=None, error_code=None
            )

    async def coalesce_update(self, job: JobRecord, payload: dict[str, Any]) -> CoalesceOutcome:
        entity_id = job.entity_key
        async with self._lock:
            now = utcnow()
            buffer = self.buffers.get(entity_id)
            if buffer is not None and buffer.pending and buffer.last_job_id:
                # updated_at is the settle guard, so every merge must move it
                if now <= buffer.updated_at:
                    now = buffer.updated_at + timedelta(microseconds=1)
                self.buffers[entity_id] = replace(
                    buffer, latest_payload=copy.deepcopy(payload), updated_at=now
                )
                return CoalesceOutcome(job_id=buffer.last_job_id, reused=True)

            self.buffers[entity_id] = UpdateBufferSnapshot(
                entity_id=entity_id,
                latest_payload=copy.deepcopy(payload),
                pending=True,
                last_job_id=job.id,
                updated_at=now,
            )
            self._insert_job(job)
            return CoalesceOutcome(job_id=job.id, reused=False)

    async def get_update_buffer(self, entity_id: str) -> UpdateBufferSnapshot | None:
        async with self._lock:
            return self.buffers.get(entity_id)

    async def settle_update_buffer(self, entity_id: str, updated_at: datetime) -> bool:
        async with self._lock:
            buffer = self.buffers.get(entity_id)
            if buffer is None or not buffer.pending or buffer.updated_at != updated_at:
                return False
            self.buffers[entity_id] = replace(buffer, pending=False)
            return True

    async def release_update_buffer(self, entity_id: str, job_id: str) -> bool:
        async with self._lock:
            buffer = self.buffers.get(entity_id)
            if buffer is None or not buffer.pending or buffer.last_job_id != job_id:
                return False
            self.buffers[entity_id] = replace(buffer, pending=False)
            return True

    async def create_follow_up_job(self, job: JobRecord) -> bool:
        async with self._lock:
            buffer = self.buffers.get(job.entity_key)
            if buffer is None or not buffer.pending:
                return False
            self._insert_job(job)
            self.buffers[job.entity_key] = replace(buffer, last_job_id=job.id)
            return True

    async def assign_flusher(self, entity_id: str, job_id: str) -> None:
        async with self._lock:
            buffer = self.buffers.get(entity_id)
            if buffer is not None and buffer.pending:
                self.buffers[entity_id] = replace(buffer, last_job_id=job_id)

    async def increment_rate_window(
        self, vendor_id: str, route_key: str, window_start: datetime
    ) -> int:
        async with self._lock:
            key = (vendor_id, route_key, window_start)
            self.rate_windows[key] = self.rate_windows.get(key, 0) + 1
            return self.rate_windows[key]
