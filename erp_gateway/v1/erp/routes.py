"""
Synchronous ERP reads, answered while the caller waits.

These bypass the queue and run under ``UpstreamProtection`` instead.
"""

import re
from typing import Any

from fastapi import APIRouter, Path, Query

from erp_gateway.infra.runtime import Runtime, RuntimeDep
from erp_gateway.v1.core.exceptions import ValidationError, create_success_response
from erp_gateway.v1.core.security import ApiKeyDep
from erp_gateway.v1.infra.jobs.handlers import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE
from erp_gateway.v1.infra.jobs.schemas import (
    AddressContactRequest,
    OrderRowsRequest,
    VerifyCustomerRequest,
)

router = APIRouter(prefix="/erp", dependencies=[ApiKeyDep])

SYNC_ROUTE_KEY = "ERP_SYNC"


@router.get("/orders/{order_nbr}/header", response_model=dict)
async def get_order_header(
    order_nbr: str = Path(..., min_length=1, max_length=32),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    order_nbr = order_nbr.strip().upper()
    if not order_nbr:
        raise ValidationError("orderNbr is required")

    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    row = await runtime.protection.protect(
        "orders.header", lambda: runtime.client.fetch_order_header(order_nbr)
    )
    return create_success_response(data={"found": row is not None, "row": row})


@router.post("/customers/verify", response_model=dict)
async def verify_customer(
    request: VerifyCustomerRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Check that a customer exists with the given postal code."""
    customer_id = request.customer_id.strip().upper()
    zip5 = re.sub(r"\D", "", request.zip_code)[:5]
    if len(zip5) != 5:
        raise ValidationError("zip_code must contain five digits")

    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    matched = await runtime.protection.protect(
        "customers.verify",
        lambda: runtime.client.verify_customer_by_zip(customer_id, zip5),
    )
    return create_success_response(data={"ok": True, "matched": matched})


def _baid(value: str) -> str:
    value = value.strip().upper()
    if not value:
        raise ValidationError("baid is required")
    return value


@router.post("/orders/payment-info", response_model=dict)
async def get_payment_info(
    request: OrderRowsRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    rows = await runtime.protection.protect(
        "orders.payment-info",
        lambda: runtime.client.fetch_payment_info_rows(request.baid, request.order_nbrs),
    )
    return create_success_response(data={"rows": rows})


@router.get("/orders/last-modified", response_model=dict)
async def get_order_last_modified(
    baid: str = Query(..., max_length=64),
    order_nbr: str = Query(..., alias="orderNbr", max_length=32),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    baid = _baid(baid)
    order_nbr = order_nbr.strip().upper()
    if not order_nbr:
        raise ValidationError("orderNbr is required")

    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    last_modified = await runtime.protection.protect(
        "orders.last-modified",
        lambda: runtime.client.fetch_order_last_modified(baid, order_nbr),
    )
    return create_success_response(data={"lastModified": last_modified})


@router.get("/orders/summaries", response_model=dict)
async def get_order_summaries(
    baid: str = Query(..., max_length=64),
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1),
    max_pages: int = Query(DEFAULT_MAX_PAGES, alias="maxPages", ge=1),
    use_order_by: bool = Query(False, alias="useOrderBy"),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """Page through a customer's sales orders; all pages count as one call."""
    baid = _baid(baid)

    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    rows = await runtime.protection.protect(
        "orders.summaries",
        lambda: runtime.client.fetch_order_summaries(
            baid, page_size, max_pages, use_order_by=use_order_by
        ),
    )
    return create_success_response(data={"rows": rows})


@router.get("/orders/summaries/delta", response_model=dict)
async def get_order_summaries_delta(
    baid: str = Query(..., max_length=64),
    since: str = Query(..., min_length=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1),
    max_pages: int = Query(DEFAULT_MAX_PAGES, alias="maxPages", ge=1),
    use_order_by: bool = Query(False, alias="useOrderBy"),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """Orders modified after ``since``, an ISO timestamp or OData literal."""
    baid = _baid(baid)
    since = since.strip()
    if not since:
        raise ValidationError("since is required")

    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    rows = await runtime.protection.protect(
        "orders.summaries-delta",
        lambda: runtime.client.fetch_order_summaries_delta(
            baid, since, page_size, max_pages, use_order_by=use_order_by
        ),
    )
    return create_success_response(data={"rows": rows})


@router.post("/orders/address-contact", response_model=dict)
async def get_address_contact(
    request: AddressContactRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    rows = await runtime.protection.protect(
        "orders.address-contact",
        lambda: runtime.client.fetch_address_contact_rows(
            request.baid,
            request.order_nbrs,
            cutoff_literal=(request.cutoff_literal or "").strip() or None,
            use_order_by=request.use_order_by,
            page_size=request.page_size,
        ),
    )
    return create_success_response(data={"rows": rows})


@router.get("/reports/order-ready", response_model=dict)
async def get_order_ready_report(runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    await runtime.admission.check(runtime.settings.vendor_id, SYNC_ROUTE_KEY)
    rows = await runtime.protection.protect(
        "reports.order-ready", runtime.client.fetch_order_ready_report_rows
    )
    return create_success_response(data={"rows": rows})
