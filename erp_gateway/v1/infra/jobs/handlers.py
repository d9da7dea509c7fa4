"""
Job handlers, one per job type.

Each handler validates the identifiers it needs from the message and raises
``JobPayloadError`` (terminal) when they are missing, then calls the ERP.
"""

import re
from typing import Any

from erp_gateway.v1.core.exceptions import JobPayloadError
from erp_gateway.v1.erp.client import AcumaticaClient
from erp_gateway.v1.infra.jobs.coalescing import UpdateFlusher
from erp_gateway.v1.infra.jobs.schemas import JobMessage

DEFAULT_PAGE_SIZE = 250
DEFAULT_MAX_PAGES = 50
DEFAULT_ADDRESS_CONTACT_PAGE_SIZE = 500


def _text(payload: dict[str, Any] | None, key: str) -> str:
    value = (payload or {}).get(key)
    return str(value).strip() if value is not None else ""


def _upper(payload: dict[str, Any] | None, key: str) -> str:
    return _text(payload, key).upper()


def _order_numbers(payload: dict[str, Any] | None) -> list[str]:
    """Upper-cased, de-duplicated order numbers in their original order."""
    raw = (payload or {}).get("orderNbrs")
    if not isinstance(raw, list):
        return []
    seen: dict[str, None] = {}
    for value in raw:
        order_nbr = str(value or "").strip().upper()
        if order_nbr:
            seen.setdefault(order_nbr, None)
    return list(seen)


def _positive_int(payload: dict[str, Any] | None, key: str, default: int) -> int:
    value = (payload or {}).get(key)
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise JobPayloadError(f"{key} must be an integer", details={key: value}) from None
    if number < 1:
        raise JobPayloadError(f"{key} must be positive", details={key: value})
    return number


def _require(**fields: str) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise JobPayloadError(
            f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
            details={"missing": missing},
        )


class _ErpHandler:
    def __init__(self, client: AcumaticaClient):
        self.client = client


class GetCustomerHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> Any:
        _require(customerId=message.customer_id or "")
        return await self.client.get_customer(message.customer_id)


class GetOpportunityHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> Any:
        _require(opportunityId=message.opportunity_id or "")
        return await self.client.get_opportunity(message.opportunity_id)


class CreateOpportunityHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> Any:
        if not message.payload:
            raise JobPayloadError("payload is required")
        return await self.client.create_opportunity(message.payload)


class UpdateOpportunityHandler:
    """Routes opportunity updates through the coalescing flush protocol."""

    def __init__(self, flusher: UpdateFlusher):
        self.flusher = flusher

    async def handle(self, message: JobMessage) -> Any:
        _require(opportunityId=message.opportunity_id or "")
        return await self.flusher.flush(
            message.opportunity_id, message.job_id, message.payload
        )


class OrderHeaderHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        order_nbr = _upper(message.payload, "orderNbr")
        _require(orderNbr=order_nbr)
        row = await self.client.fetch_order_header(order_nbr)
        return {"found": row is not None, "row": row}


class PaymentInfoHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        baid = _upper(message.payload, "baid")
        _require(baid=baid)
        rows = await self.client.fetch_payment_info_rows(
            baid, _order_numbers(message.payload)
        )
        return {"rows": rows}


class InventoryDetailsHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        baid = _upper(message.payload, "baid")
        _require(baid=baid)
        rows = await self.client.fetch_inventory_details_rows(
            baid, _order_numbers(message.payload)
        )
        return {"rows": rows}


class OrderSummariesHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        payload = message.payload
        baid = _upper(payload, "baid")
        _require(baid=baid)
        rows = await self.client.fetch_order_summaries(
            baid,
            page_size=_positive_int(payload, "pageSize", DEFAULT_PAGE_SIZE),
            max_pages=_positive_int(payload, "maxPages", DEFAULT_MAX_PAGES),
            use_order_by=bool((payload or {}).get("useOrderBy")),
        )
        return {"rows": rows}


class OrderSummariesDeltaHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        payload = message.payload
        baid = _upper(payload, "baid")
        since = _text(payload, "since")
        _require(baid=baid, since=since)
        rows = await self.client.fetch_order_summaries_delta(
            baid,
            since,
            page_size=_positive_int(payload, "pageSize", DEFAULT_PAGE_SIZE),
            max_pages=_positive_int(payload, "maxPages", DEFAULT_MAX_PAGES),
            use_order_by=bool((payload or {}).get("useOrderBy")),
        )
        return {"rows": rows}


class OrderLastModifiedHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        baid = _upper(message.payload, "baid")
        order_nbr = _upper(message.payload, "orderNbr")
        _require(baid=baid, orderNbr=order_nbr)
        last_modified = await self.client.fetch_order_last_modified(baid, order_nbr)
        return {"lastModified": last_modified}


class VerifyCustomerHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        customer_id = _upper(message.payload, "customerId")
        zip5 = re.sub(r"\D", "", _text(message.payload, "zip5"))[:5]
        if not customer_id or len(zip5) != 5:
            raise JobPayloadError("customerId and zip5 are required")
        matched = await self.client.verify_customer_by_zip(customer_id, zip5)
        return {"ok": True, "matched": matched}


class AddressContactHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        payload = message.payload
        baid = _upper(payload, "baid")
        _require(baid=baid)
        rows = await self.client.fetch_address_contact_rows(
            baid,
            _order_numbers(payload),
            cutoff_literal=_text(payload, "cutoffLiteral") or None,
            use_order_by=bool((payload or {}).get("useOrderBy")),
            page_size=_positive_int(
                payload, "pageSize", DEFAULT_ADDRESS_CONTACT_PAGE_SIZE
            ),
        )
        return {"rows": rows}


class OrderReadyReportHandler(_ErpHandler):
    async def handle(self, message: JobMessage) -> dict[str, Any]:
        return {"rows": await self.client.fetch_order_ready_report_rows()}
