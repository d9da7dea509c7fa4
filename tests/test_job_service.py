import asyncio
import json

import pytest

from erp_gateway.v1.core.exceptions import DuplicateKeyError, QueuePublishError, ValidationError
from erp_gateway.v1.infra.jobs.models import JobErrorCode, JobStatus, JobType
from erp_gateway.v1.infra.jobs.schemas import EnqueueInput
from erp_gateway.v1.infra.jobs.service import truncate_error


class BrokenQueue:
    """Queue whose sends fail until ``healthy`` is set."""

    def __init__(self, inner):
        self.inner = inner
        self.healthy = False

    async def send(self, message):
        if not self.healthy:
            raise ConnectionError("service bus unreachable")
        await self.inner.send(message)


@pytest.mark.asyncio
async def test_enqueue_records_job_before_publishing(service, store, queue):
    result = await service.enqueue_job(
        EnqueueInput(type=JobType.GET_CUSTOMER, customer_id="C000123")
    )

    job = store.jobs[result.job_id]
    assert job.status == JobStatus.QUEUED.value
    assert job.type == "GET_CUSTOMER"
    assert job.entity_key == "C000123"
    assert result.reused is False

    assert queue.sent == [
        {
            "jobId": result.job_id,
            "vendorId": "specbooks",
            "type": "GET_CUSTOMER",
            "customerId": "C000123",
            "requestedAt": queue.sent[0]["requestedAt"],
        }
    ]


@pytest.mark.asyncio
async def test_publish_failure_marks_job_enqueue_failed(service, store, queue):
    service.queue = BrokenQueue(queue)

    with pytest.raises(QueuePublishError) as exc_info:
        await service.enqueue_job(EnqueueInput(type=JobType.GET_OPPORTUNITY, opportunity_id="OP1"))

    job_id = exc_info.value.details["job_id"]
    job = store.jobs[job_id]
    assert exc_info.value.status_code == 503
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == JobErrorCode.ENQUEUE_FAILED.value
    assert "service bus unreachable" in job.error


@pytest.mark.asyncio
async def test_idempotent_create_returns_first_job(service, store, queue):
    first = await service.create_with_idempotency({"Subject": {"value": "Kitchen"}}, "key-1")
    second = await service.create_with_idempotency({"Subject": {"value": "Other"}}, "key-1")

    assert second.job_id == first.job_id
    assert second.reused is True
    assert len(store.jobs) == 1
    assert len(queue.sent) == 1
    assert queue.sent[0]["idempotencyKey"] == "key-1"


@pytest.mark.asyncio
async def test_idempotency_keys_are_scoped_per_vendor(service, store):
    first = await service.create_with_idempotency({"a": 1}, "shared")
    service.vendor_id = "other-vendor"
    second = await service.create_with_idempotency({"a": 1}, "shared")

    assert first.job_id != second.job_id
    assert second.reused is False


@pytest.mark.asyncio
async def test_idempotency_race_loser_returns_winner(service, store):
    winner = await service.create_with_idempotency({"a": 1}, "race-key")
    real_find = store.find_job_by_idempotency_key
    lookups = 0

    async def miss_first_lookup(vendor_id, key):
        nonlocal lookups
        lookups += 1
        if lookups == 1:
            return None
        return await real_find(vendor_id, key)

    store.find_job_by_idempotency_key = miss_first_lookup

    result = await service.create_with_idempotency({"a": 2}, "race-key")

    assert result.job_id == winner.job_id
    assert result.reused is True
    assert len(store.jobs) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_with_same_key_share_one_job(service, store, queue):
    real_find = store.find_job_by_idempotency_key

    async def lookup_then_yield(vendor_id, key):
        found = await real_find(vendor_id, key)
        await asyncio.sleep(0)
        return found

    store.find_job_by_idempotency_key = lookup_then_yield

    first, second = await asyncio.gather(
        service.create_with_idempotency({"a": 1}, "K1"),
        service.create_with_idempotency({"a": 1}, "K1"),
    )

    assert first.job_id == second.job_id
    assert sorted([first.reused, second.reused]) == [False, True]
    assert len(store.jobs) == 1
    assert len(queue.sent) == 1


@pytest.mark.asyncio
async def test_memory_store_rejects_second_key_binding(store):
    from erp_gateway.v1.infra.jobs.store import JobRecord

    await store.create_job_with_idempotency_key(
        JobRecord(id="j1", vendor_id="v", type="CREATE_OPPORTUNITY"), "k"
    )

    with pytest.raises(DuplicateKeyError):
        await store.create_job_with_idempotency_key(
            JobRecord(id="j2", vendor_id="v", type="CREATE_OPPORTUNITY"), "k"
        )
    assert "j2" not in store.jobs


@pytest.mark.asyncio
async def test_replay_republishes_job_that_never_reached_queue(service, store, queue):
    broken = BrokenQueue(queue)
    service.queue = broken

    with pytest.raises(QueuePublishError):
        await service.create_with_idempotency({"a": 1}, "retry-key")
    assert queue.sent == []

    broken.healthy = True
    result = await service.create_with_idempotency({"a": 1}, "retry-key")

    job = store.jobs[result.job_id]
    assert result.reused is True
    assert job.status == JobStatus.QUEUED.value
    assert job.error_code is None
    assert [m["jobId"] for m in queue.sent] == [result.job_id]


@pytest.mark.asyncio
async def test_replay_does_not_republish_processed_job(service, store, queue):
    first = await service.create_with_idempotency({"a": 1}, "done-key")
    await store.mark_succeeded(first.job_id, {"id": "OP1"})

    await service.create_with_idempotency({"a": 1}, "done-key")

    assert len(queue.sent) == 1


@pytest.mark.asyncio
async def test_enqueue_job_routes_updates_to_coalescing(service, store):
    result = await service.enqueue_job(
        EnqueueInput(type=JobType.UPDATE_OPPORTUNITY, opportunity_id="OP1", payload={"x": 1})
    )

    assert store.buffers["OP1"].last_job_id == result.job_id


@pytest.mark.asyncio
async def test_enqueue_update_without_opportunity_id_is_rejected(service):
    with pytest.raises(ValidationError):
        await service.enqueue_job(EnqueueInput(type=JobType.UPDATE_OPPORTUNITY, payload={"x": 1}))


@pytest.mark.asyncio
async def test_queue_message_body_is_camel_case_json(service, queue):
    result = await service.enqueue_job(
        EnqueueInput(
            type=JobType.ERP_GET_ORDER_HEADER, payload={"orderNbr": "SO001"}
        )
    )

    [received] = await queue.receive(1, 0.1)
    body = json.loads(received.body)
    assert body["jobId"] == result.job_id
    assert body["payload"] == {"orderNbr": "SO001"}
    assert received.delivery_count == 1


def test_truncate_error():
    assert truncate_error("short", 10) == "short"
    assert truncate_error("x" * 20, 10) == "x" * 10
