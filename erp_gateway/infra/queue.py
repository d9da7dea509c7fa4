"""
Job message queue adapters.

``ServiceBusJobQueue`` talks to an Azure Service Bus queue in peek-lock mode;
``MemoryJobQueue`` has the same settle semantics in process.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode
from azure.servicebus.aio import ServiceBusClient

from erp_gateway.v1.infra.jobs.schemas import JobMessage


@dataclass
class ReceivedJobMessage:
    """A delivered message, still locked until settled."""

    body: str | bytes
    delivery_count: int
    raw: Any = None
    message_id: str | None = None


class JobQueue(Protocol):
    async def send(self, message: JobMessage) -> None:
        ...

    async def receive(self, max_messages: int, max_wait_s: float) -> list[ReceivedJobMessage]:
        ...

    async def complete(self, received: ReceivedJobMessage) -> None:
        ...

    async def abandon(self, received: ReceivedJobMessage) -> None:
        ...

    async def dead_letter(
        self, received: ReceivedJobMessage, reason: str, description: str
    ) -> None:
        ...

    async def close(self) -> None:
        ...


def _message_body(message: Any) -> str | bytes:
    """Return the body as delivered; bytes are decoded by the JSON parser."""
    body = getattr(message, "body", None)
    if body is None:
        return str(message)
    if isinstance(body, bytes | str):
        return body
    return b"".join(body)


class ServiceBusJobQueue:
    """Azure Service Bus queue, one lazily opened sender and receiver."""

    def __init__(self, connection_string: str, queue_name: str):
        self.queue_name = queue_name
        self._client = ServiceBusClient.from_connection_string(connection_string)
        self._sender = None
        self._receiver = None
        self._sender_lock = asyncio.Lock()

    async def _get_sender(self):
        async with self._sender_lock:
            if self._sender is None:
                self._sender = self._client.get_queue_sender(queue_name=self.queue_name)
            return self._sender

    def _get_receiver(self):
        if self._receiver is None:
            self._receiver = self._client.get_queue_receiver(
                queue_name=self.queue_name,
                receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
            )
        return self._receiver

    async def send(self, message: JobMessage) -> None:
        sender = await self._get_sender()
        await sender.send_messages(
            ServiceBusMessage(
                json.dumps(message.to_wire()),
                message_id=message.job_id,
                content_type="application/json",
                application_properties={
                    "vendorId": message.vendor_id,
                    "type": message.type,
                },
            )
        )

    async def receive(self, max_messages: int, max_wait_s: float) -> list[ReceivedJobMessage]:
        receiver = self._get_receiver()
        messages = await receiver.receive_messages(
            max_message_count=max_messages, max_wait_time=max_wait_s
        )
        return [
            ReceivedJobMessage(
                body=_message_body(message),
                delivery_count=getattr(message, "delivery_count", None) or 1,
                raw=message,
                message_id=message.message_id,
            )
            for message in messages
        ]

    async def complete(self, received: ReceivedJobMessage) -> None:
        await self._get_receiver().complete_message(received.raw)

    async def abandon(self, received: ReceivedJobMessage) -> None:
        await self._get_receiver().abandon_message(received.raw)

    async def dead_letter(
        self, received: ReceivedJobMessage, reason: str, description: str
    ) -> None:
        await self._get_receiver().dead_letter_message(
            received.raw, reason=reason, error_description=description[:1024]
        )

    async def close(self) -> None:
        if self._sender is not None:
            await self._sender.close()
        if self._receiver is not None:
            await self._receiver.close()
        await self._client.close()


@dataclass
class _Envelope:
    body: str | bytes
    message_id: str | None
    delivery_count: int = 0


@dataclass
class MemoryJobQueue:
    """In-process queue; abandoned messages are redelivered with a higher count."""

    sent: list[dict[str, Any]] = field(default_factory=list)
    completed: list[ReceivedJobMessage] = field(default_factory=list)
    abandoned: list[ReceivedJobMessage] = field(default_factory=list)
    dead_lettered: list[tuple[ReceivedJobMessage, str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._pending: asyncio.Queue[_Envelope] = asyncio.Queue()

    async def send(self, message: JobMessage) -> None:
        wire = message.to_wire()
        self.sent.append(wire)
        self.put_raw(json.dumps(wire), message_id=message.job_id)

    def put_raw(self, body: str | bytes, message_id: str | None = None) -> None:
        self._pending.put_nowait(_Envelope(body=body, message_id=message_id))

    def pending_count(self) -> int:
        return self._pending.qsize()

    async def receive(self, max_messages: int, max_wait_s: float) -> list[ReceivedJobMessage]:
        try:
            first = await asyncio.wait_for(self._pending.get(), timeout=max_wait_s)
        except asyncio.TimeoutError:
            return []

        envelopes = [first]
        while len(envelopes) < max_messages and not self._pending.empty():
            envelopes.append(self._pending.get_nowait())

        received = []
        for envelope in envelopes:
            envelope.delivery_count += 1
            received.append(
                ReceivedJobMessage(
                    body=envelope.body,
                    delivery_count=envelope.delivery_count,
                    raw=envelope,
                    message_id=envelope.message_id,
                )
            )
        return received

    async def complete(self, received: ReceivedJobMessage) -> None:
        self.completed.append(received)

    async def abandon(self, received: ReceivedJobMessage) -> None:
        self.abandoned.append(received)
        self._pending.put_nowait(received.raw)

    async def dead_letter(
        self, received: ReceivedJobMessage, reason: str, description: str
    ) -> None:
        self.dead_lettered.append((received, reason, description))

    async def close(self) -> None:
        return None
