"""
Job registry construction.

The registry is built per worker runtime so handlers share that runtime's
ERP client and flusher.
"""

from erp_gateway.config.logging import get_logger
from erp_gateway.v1.core.registries import JobRegistry
from erp_gateway.v1.erp.client import AcumaticaClient
from erp_gateway.v1.infra.jobs.coalescing import UpdateFlusher
from erp_gateway.v1.infra.jobs.handlers import (
    AddressContactHandler,
    CreateOpportunityHandler,
    GetCustomerHandler,
    GetOpportunityHandler,
    InventoryDetailsHandler,
    OrderHeaderHandler,
    OrderLastModifiedHandler,
    OrderReadyReportHandler,
    OrderSummariesDeltaHandler,
    OrderSummariesHandler,
    PaymentInfoHandler,
    UpdateOpportunityHandler,
    VerifyCustomerHandler,
)
from erp_gateway.v1.infra.jobs.models import JobType

logger = get_logger(__name__)


def build_job_registry(client: AcumaticaClient, flusher: UpdateFlusher) -> JobRegistry:
    """Register a handler for every job type and freeze the registry."""
    registry = JobRegistry()

    # Customers and opportunities
    registry.register(JobType.GET_CUSTOMER, GetCustomerHandler(client))
    registry.register(JobType.GET_OPPORTUNITY, GetOpportunityHandler(client))
    registry.register(JobType.CREATE_OPPORTUNITY, CreateOpportunityHandler(client))
    registry.register(JobType.UPDATE_OPPORTUNITY, UpdateOpportunityHandler(flusher))

    # ERP reads
    registry.register(JobType.ERP_GET_ORDER_HEADER, OrderHeaderHandler(client))
    registry.register(JobType.ERP_GET_PAYMENT_INFO, PaymentInfoHandler(client))
    registry.register(
        JobType.ERP_GET_INVENTORY_DETAILS, InventoryDetailsHandler(client)
    )
    registry.register(JobType.ERP_GET_ORDER_SUMMARIES, OrderSummariesHandler(client))
    registry.register(
        JobType.ERP_GET_ORDER_SUMMARIES_DELTA, OrderSummariesDeltaHandler(client)
    )
    registry.register(
        JobType.ERP_GET_ORDER_LAST_MODIFIED, OrderLastModifiedHandler(client)
    )
    registry.register(JobType.ERP_VERIFY_CUSTOMER, VerifyCustomerHandler(client))
    registry.register(JobType.ERP_GET_ADDRESS_CONTACT, AddressContactHandler(client))
    registry.register(
        JobType.ERP_GET_ORDER_READY_REPORT, OrderReadyReportHandler(client)
    )

    missing = registry.missing(JobType)
    if missing:
        raise RuntimeError(f"No job handler registered for: {', '.join(missing)}")

    registry.freeze()
    logger.info("job_handlers_registered", registered_handlers=registry.list())
    return registry
