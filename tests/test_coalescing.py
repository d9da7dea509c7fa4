from datetime import timedelta

import pytest

from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import JobPayloadError, QueuePublishError
from erp_gateway.v1.infra.jobs.coalescing import UpdateFlusher
from erp_gateway.v1.infra.jobs.models import JobStatus


class RecordingClient:
    """Stands in for the ERP client; ``during_update`` runs mid-call."""

    def __init__(self):
        self.updates: list[tuple[str, dict]] = []
        self.during_update = None

    async def update_opportunity(self, opportunity_id, payload):
        self.updates.append((opportunity_id, payload))
        if self.during_update is not None:
            hook, self.during_update = self.during_update, None
            await hook()
        return {"OpportunityID": {"value": opportunity_id}}


@pytest.fixture
def erp():
    return RecordingClient()


@pytest.fixture
def flusher(settings, store, erp, service):
    return UpdateFlusher(settings, store, erp, service)


@pytest.mark.asyncio
async def test_updates_merge_into_one_pending_job(service, store, queue):
    first = await service.enqueue_coalesced_update("OP1", {"Stage": {"value": "A"}})
    second = await service.enqueue_coalesced_update("OP1", {"Stage": {"value": "B"}})
    third = await service.enqueue_coalesced_update("OP1", {"Stage": {"value": "C"}})

    assert first.reused is False
    assert second.job_id == first.job_id and second.reused is True
    assert third.job_id == first.job_id and third.reused is True
    assert len(queue.sent) == 1
    assert store.buffers["OP1"].latest_payload == {"Stage": {"value": "C"}}


@pytest.mark.asyncio
async def test_flush_sends_latest_payload_once_and_settles(service, store, erp, flusher):
    first = await service.enqueue_coalesced_update("OP1", {"Stage": {"value": "A"}})
    await service.enqueue_coalesced_update("OP1", {"Stage": {"value": "B"}})

    result = await flusher.flush("OP1", first.job_id)

    assert erp.updates == [("OP1", {"Stage": {"value": "B"}})]
    assert result == {"OpportunityID": {"value": "OP1"}}
    assert store.buffers["OP1"].pending is False


@pytest.mark.asyncio
async def test_update_after_settle_starts_new_job(service, store, queue, flusher):
    first = await service.enqueue_coalesced_update("OP1", {"n": 1})
    await flusher.flush("OP1", first.job_id)

    second = await service.enqueue_coalesced_update("OP1", {"n": 2})

    assert second.job_id != first.job_id
    assert second.reused is False
    assert len(queue.sent) == 2


@pytest.mark.asyncio
async def test_write_during_flush_gets_follow_up_job(service, store, queue, erp, flusher):
    first = await service.enqueue_coalesced_update("OP1", {"n": 1})

    async def late_write():
        reused = await service.enqueue_coalesced_update("OP1", {"n": 2})
        # The in-flight flusher still owns the buffer, so the write merges
        assert reused.job_id == first.job_id

    erp.during_update = late_write
    await flusher.flush("OP1", first.job_id)

    buffer = store.buffers["OP1"]
    assert buffer.pending is True
    assert buffer.latest_payload == {"n": 2}
    assert buffer.last_job_id != first.job_id

    follow_up_id = buffer.last_job_id
    assert store.jobs[follow_up_id].status == JobStatus.QUEUED.value
    assert [m["jobId"] for m in queue.sent] == [first.job_id, follow_up_id]

    await flusher.flush("OP1", follow_up_id)

    assert erp.updates == [("OP1", {"n": 1}), ("OP1", {"n": 2})]
    assert store.buffers["OP1"].pending is False


@pytest.mark.asyncio
async def test_failed_follow_up_publish_returns_flusher_role(service, store, queue, erp, flusher):
    first = await service.enqueue_coalesced_update("OP1", {"n": 1})

    async def late_write_then_queue_outage():
        await service.enqueue_coalesced_update("OP1", {"n": 2})

        async def fail(message):
            raise ConnectionError("queue down")

        queue.send = fail

    erp.during_update = late_write_then_queue_outage

    with pytest.raises(QueuePublishError):
        await flusher.flush("OP1", first.job_id)

    buffer = store.buffers["OP1"]
    assert buffer.pending is True
    assert buffer.last_job_id == first.job_id


@pytest.mark.asyncio
async def test_stale_flusher_reports_superseded(service, store, erp, flusher):
    first = await service.enqueue_coalesced_update("OP1", {"n": 1})
    await store.assign_flusher("OP1", "newer-job")

    result = await flusher.flush("OP1", first.job_id)

    assert result == {"status": "superseded"}
    assert erp.updates == []


@pytest.mark.asyncio
async def test_missing_buffer_without_payload_is_terminal(flusher):
    with pytest.raises(JobPayloadError):
        await flusher.flush("OP404", "job-1")


@pytest.mark.asyncio
async def test_missing_buffer_uses_message_payload(erp, flusher):
    result = await flusher.flush("OP9", "job-1", {"Stage": {"value": "Won"}})

    assert erp.updates == [("OP9", {"Stage": {"value": "Won"}})]
    assert result == {"OpportunityID": {"value": "OP9"}}


@pytest.mark.asyncio
async def test_flush_waits_for_quiet_window(service, store, erp):
    first = await service.enqueue_coalesced_update("OP1", {"n": 1})
    written_at = store.buffers["OP1"].updated_at
    elapsed = timedelta(seconds=1)
    sleeps = []

    async def sleep(seconds):
        nonlocal elapsed
        sleeps.append(seconds)
        elapsed += timedelta(seconds=seconds)

    flusher = UpdateFlusher(
        Settings(update_coalesce_window_ms=5000),
        store,
        erp,
        service,
        sleep=sleep,
        now=lambda: written_at + elapsed,
    )

    await flusher.flush("OP1", first.job_id)

    assert sleeps == [pytest.approx(4.0)]
    assert erp.updates == [("OP1", {"n": 1})]


@pytest.mark.asyncio
async def test_publish_failure_releases_buffer(service, store, queue):
    async def fail(message):
        raise ConnectionError("queue down")

    queue.send = fail

    with pytest.raises(QueuePublishError):
        await service.enqueue_coalesced_update("OP1", {"n": 1})

    assert store.buffers["OP1"].pending is False

    del queue.send
    retry = await service.enqueue_coalesced_update("OP1", {"n": 1})
    assert retry.reused is False
