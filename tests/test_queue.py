import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from erp_gateway.config.settings import QueueBackend, Settings
from erp_gateway.infra.queue import MemoryJobQueue, ServiceBusJobQueue, _message_body
from erp_gateway.infra.runtime import build_runtime
from erp_gateway.v1.infra.jobs.schemas import JobMessage
from erp_gateway.v1.infra.jobs.store import MemoryJobStore


def job_message(job_id: str = "job-1") -> JobMessage:
    return JobMessage(
        job_id=job_id, vendor_id="specbooks", type="GET_CUSTOMER", customer_id="C1"
    )


@pytest.mark.asyncio
async def test_memory_queue_batches_up_to_max_messages():
    queue = MemoryJobQueue()
    for i in range(3):
        await queue.send(job_message(f"job-{i}"))

    batch = await queue.receive(2, 0.1)

    assert [r.message_id for r in batch] == ["job-0", "job-1"]
    assert queue.pending_count() == 1


@pytest.mark.asyncio
async def test_memory_queue_receive_times_out_empty():
    assert await MemoryJobQueue().receive(5, 0.01) == []


@pytest.mark.asyncio
async def test_memory_queue_abandon_redelivers_with_higher_count():
    queue = MemoryJobQueue()
    await queue.send(job_message())

    [first] = await queue.receive(1, 0.1)
    await queue.abandon(first)
    [second] = await queue.receive(1, 0.1)

    assert first.delivery_count == 1
    assert second.delivery_count == 2
    assert second.body == first.body


def test_message_body_joins_sdk_body_sections():
    assert _message_body(SimpleNamespace(body=[b'{"a":', b"1}"])) == b'{"a":1}'
    assert _message_body(SimpleNamespace(body=b"raw")) == b"raw"
    assert _message_body(SimpleNamespace(body="text")) == "text"


@pytest.mark.asyncio
@patch("erp_gateway.infra.queue.ServiceBusClient")
async def test_service_bus_send_sets_message_metadata(mock_client_class):
    sender = AsyncMock()
    mock_client = Mock()
    mock_client.get_queue_sender.return_value = sender
    mock_client_class.from_connection_string.return_value = mock_client

    queue = ServiceBusJobQueue("Endpoint=sb://test/", "erp-jobs")
    await queue.send(job_message())

    mock_client.get_queue_sender.assert_called_once_with(queue_name="erp-jobs")
    [sent] = sender.send_messages.await_args.args
    assert sent.message_id == "job-1"
    assert sent.content_type == "application/json"
    assert sent.application_properties == {"vendorId": "specbooks", "type": "GET_CUSTOMER"}
    assert json.loads(_message_body(sent))["jobId"] == "job-1"


@pytest.mark.asyncio
@patch("erp_gateway.infra.queue.ServiceBusClient")
async def test_service_bus_dead_letter_passes_reason(mock_client_class):
    receiver = AsyncMock()
    mock_client = Mock()
    mock_client.get_queue_receiver.return_value = receiver
    mock_client_class.from_connection_string.return_value = mock_client
    raw = SimpleNamespace(body=[b"{}"], delivery_count=3, message_id="m1")
    receiver.receive_messages.return_value = [raw]

    queue = ServiceBusJobQueue("Endpoint=sb://test/", "erp-jobs")
    [received] = await queue.receive(1, 1.0)
    await queue.dead_letter(received, "MAX_DELIVERY_EXCEEDED", "x" * 2000)

    assert received.delivery_count == 3
    receiver.dead_letter_message.assert_awaited_once_with(
        raw, reason="MAX_DELIVERY_EXCEEDED", error_description="x" * 1024
    )


def test_memory_backend_runtime_has_embedded_consumer():
    runtime = build_runtime(Settings(queue_backend=QueueBackend.MEMORY))

    assert isinstance(runtime.store, MemoryJobStore)
    assert isinstance(runtime.queue, MemoryJobQueue)
    assert runtime.consumer is not None
    assert runtime.database is None


@pytest.mark.asyncio
@patch("erp_gateway.infra.queue.ServiceBusClient")
async def test_service_bus_receive_keeps_undecodable_bodies_in_batch(mock_client_class):
    receiver = AsyncMock()
    mock_client = Mock()
    mock_client.get_queue_receiver.return_value = receiver
    mock_client_class.from_connection_string.return_value = mock_client
    valid = SimpleNamespace(
        body=[json.dumps(job_message().to_wire()).encode()], delivery_count=1, message_id="job-1"
    )
    poison = SimpleNamespace(body=[b"\xff\xfe"], delivery_count=1, message_id="m2")
    receiver.receive_messages.return_value = [valid, poison]

    queue = ServiceBusJobQueue("Endpoint=sb://test/", "erp-jobs")
    received = await queue.receive(10, 1.0)

    assert [r.message_id for r in received] == ["job-1", "m2"]
    assert received[1].body == b"\xff\xfe"
    assert json.loads(received[0].body)["jobId"] == "job-1"
