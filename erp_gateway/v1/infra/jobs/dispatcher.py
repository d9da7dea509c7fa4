from typing import Any

from erp_gateway.v1.core.exceptions import UnsupportedJobTypeError
from erp_gateway.v1.core.registries import JobRegistry
from erp_gateway.v1.infra.jobs.schemas import JobMessage


class JobDispatcher:
    """Routes a job message to the handler registered for its type."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry

    async def dispatch(self, message: JobMessage) -> Any:
        try:
            handler = self.registry.get(message.type)
        except KeyError:
            raise UnsupportedJobTypeError(message.type) from None
        return await handler.handle(message)
