"""
Async Acumatica REST client.

Every request goes through ``with_timeout`` with the operation's configured
timeout; non-2xx answers raise ``UpstreamError`` carrying the ERP status so the
retry engine can classify them.
"""

import asyncio
import time
from typing import Any

import httpx

from erp_gateway.config.logging import get_logger
from erp_gateway.config.settings import Settings
from erp_gateway.v1.core.exceptions import UpstreamError
from erp_gateway.v1.erp.retry import with_timeout

logger = get_logger(__name__)

# Refresh the bearer a little before it actually expires
TOKEN_EXPIRY_MARGIN_S = 30

ADDRESS_CONTACT_SELECT = (
    "OrderNbr,AddressLine1,AddressLine2,City,State,PostalCode,DeliveryEmail,JobName,ShipVia"
)
ADDRESS_CONTACT_CUSTOM = (
    "Document.AttributeSITENUMBER, Document.AttributeOSCONTACT, "
    "Document.AttributeCONFIRMVIA, Document.AttributeCONFIRMWTH"
)


def quote_odata(value: str) -> str:
    return value.replace("'", "''")


def to_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("value"), list):
        return payload["value"]
    return []


def _any_of(field: str, values: list[str]) -> str:
    return "(" + " or ".join(f"{field} eq '{quote_odata(v)}'" for v in values) + ")"


def _payload(response: httpx.Response, operation: str) -> Any:
    if response.status_code >= 400:
        raise UpstreamError(
            f"Acumatica request failed: {response.status_code} "
            f"{response.reason_phrase} {response.text[:500]}".strip(),
            status_code=response.status_code,
            details={"operation": operation},
        )
    if not response.content:
        return []
    return response.json()


class AcumaticaClient:
    """Client for the Acumatica contract-based REST API."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        clock=time.monotonic,
    ):
        self.settings = settings
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.erp_timeout_default_ms / 1000
        )
        self._owns_http = http_client is None
        self._clock = clock
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def base_url(self) -> str:
        return self.settings.acumatica_base_url.rstrip("/")

    @property
    def entity_base(self) -> str:
        return (
            f"{self.base_url}/entity/{self.settings.acumatica_endpoint_name}"
            f"/{self.settings.acumatica_endpoint_version}"
        )

    async def get_token(self) -> str:
        """Return a cached bearer, fetching or refreshing it when expired."""
        async with self._token_lock:
            if self._access_token and self._token_expiry > self._clock():
                return self._access_token

            form = {
                "client_id": self.settings.acumatica_client_id,
                "client_secret": self.settings.acumatica_client_secret,
            }
            if self._refresh_token:
                form.update(grant_type="refresh_token", refresh_token=self._refresh_token)
            else:
                form.update(
                    grant_type="password",
                    username=self.settings.acumatica_username,
                    password=self.settings.acumatica_password,
                    scope="api offline_access",
                )

            response = await with_timeout(
                self._http.post(f"{self.base_url}/identity/connect/token", data=form),
                self.settings.erp_timeout_s("auth.token"),
                "auth.token",
            )
            try:
                data = response.json()
            except ValueError:
                data = {}

            if response.status_code >= 400:
                # A rejected refresh token must not poison the next attempt
                self._refresh_token = None
                reason = data.get("error_description") or data.get("error") or "unknown"
                raise UpstreamError(
                    f"Token request failed: {reason}", status_code=response.status_code
                )

            self._access_token = data["access_token"]
            self._refresh_token = data.get("refresh_token")
            expires_in = float(data.get("expires_in", 0))
            self._token_expiry = self._clock() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_S)
            logger.info("erp_token_acquired", expires_in=expires_in)
            return self._access_token

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> Any:
        token = await self.get_token()
        response = await with_timeout(
            self._http.request(
                method,
                url,
                params=params,
                json=json,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {token}",
                },
            ),
            self.settings.erp_timeout_s(operation),
            operation,
        )

        if response.status_code == 401:
            self._access_token = None
        return _payload(response, operation)

    async def _query(
        self,
        operation: str,
        entity: str,
        *,
        filter_expr: str | None = None,
        select: str | None = None,
        expand: str | None = None,
        top: int | None = None,
        skip: int | None = None,
        order_by: str | None = None,
        custom: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, str] = {}
        if filter_expr:
            params["$filter"] = filter_expr
        if select:
            params["$select"] = select
        if expand:
            params["$expand"] = expand
        if custom:
            params["$custom"] = custom
        if order_by:
            params["$orderby"] = order_by
        if top is not None:
            params["$top"] = str(top)
        if skip:
            params["$skip"] = str(skip)
        payload = await self._request(
            operation, "GET", f"{self.entity_base}/{entity}", params=params
        )
        return to_rows(payload)

    async def _query_pages(
        self, operation: str, entity: str, page_size: int, max_pages: int, **query
    ) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for page in range(max_pages):
            batch = await self._query(
                operation, entity, top=page_size, skip=page * page_size, **query
            )
            rows.extend(batch)
            if len(batch) < page_size:
                break
        return rows

    # Customers and opportunities

    async def get_customer(self, customer_id: str) -> Any:
        return await self._query(
            "customers.get",
            self.settings.acumatica_customer_entity,
            filter_expr=f"CustomerID eq '{quote_odata(customer_id)}'",
        )

    async def verify_customer_by_zip(self, customer_id: str, zip5: str) -> bool:
        rows = await self._query(
            "customers.verify",
            self.settings.acumatica_customer_entity,
            filter_expr=(
                f"CustomerID eq '{quote_odata(customer_id)}' "
                f"and Zip5 eq '{quote_odata(zip5)}'"
            ),
            top=1,
        )
        return len(rows) > 0

    async def get_opportunity(self, opportunity_id: str) -> Any:
        expand = self.settings.acumatica_opportunity_expand.strip() or None
        return await self._query(
            "opportunities.get",
            self.settings.acumatica_opportunity_entity,
            filter_expr=f"OpportunityID eq '{quote_odata(opportunity_id)}'",
            expand=expand,
        )

    async def create_opportunity(self, payload: dict[str, Any]) -> Any:
        return await self._request(
            "opportunities.create",
            "PUT",
            f"{self.entity_base}/{self.settings.acumatica_opportunity_entity}",
            json=payload,
        )

    async def update_opportunity(self, opportunity_id: str, payload: dict[str, Any]) -> Any:
        body = {"OpportunityID": {"value": opportunity_id}, **payload}
        return await self._request(
            "opportunities.update",
            "PUT",
            f"{self.entity_base}/{self.settings.acumatica_opportunity_entity}",
            json=body,
        )

    # Sales orders

    async def fetch_order_header(self, order_nbr: str) -> dict[str, Any] | None:
        rows = await self._query(
            "orders.header",
            self.settings.acumatica_sales_order_entity,
            filter_expr=f"OrderNbr eq '{quote_odata(order_nbr)}'",
            top=1,
        )
        return rows[0] if rows else None

    async def fetch_order_last_modified(self, baid: str, order_nbr: str) -> str | None:
        rows = await self._query(
            "orders.last-modified",
            self.settings.acumatica_sales_order_entity,
            filter_expr=(
                f"CustomerID eq '{quote_odata(baid)}' "
                f"and OrderNbr eq '{quote_odata(order_nbr)}'"
            ),
            select="OrderNbr,LastModified",
            top=1,
        )
        if not rows:
            return None
        last_modified = rows[0].get("LastModified")
        if isinstance(last_modified, dict):
            return last_modified.get("value")
        return last_modified

    async def fetch_payment_info_rows(
        self, baid: str, order_nbrs: list[str]
    ) -> list[dict[str, Any]]:
        filter_expr = f"CustomerID eq '{quote_odata(baid)}'"
        if order_nbrs:
            filter_expr += " and " + _any_of("OrderNbr", order_nbrs)
        return await self._query(
            "orders.payment-info",
            self.settings.acumatica_payment_entity,
            filter_expr=filter_expr,
        )

    async def fetch_inventory_details_rows(
        self, baid: str, order_nbrs: list[str]
    ) -> list[dict[str, Any]]:
        filter_expr = f"CustomerID eq '{quote_odata(baid)}'"
        if order_nbrs:
            filter_expr += " and " + _any_of("OrderNbr", order_nbrs)
        return await self._query(
            "orders.inventory-details",
            self.settings.acumatica_sales_order_entity,
            filter_expr=filter_expr,
            select="OrderNbr,Status",
            expand="Details",
        )

    async def fetch_order_summaries(
        self, baid: str, page_size: int, max_pages: int, use_order_by: bool = False
    ) -> list[dict[str, Any]]:
        return await self._query_pages(
            "orders.summaries",
            self.settings.acumatica_sales_order_entity,
            page_size,
            max_pages,
            filter_expr=f"CustomerID eq '{quote_odata(baid)}'",
            order_by="RequestedOn desc" if use_order_by else None,
        )

    async def fetch_order_summaries_delta(
        self,
        baid: str,
        since: str,
        page_size: int,
        max_pages: int,
        use_order_by: bool = False,
    ) -> list[dict[str, Any]]:
        since_literal = since if since.startswith("datetimeoffset'") else f"datetimeoffset'{since}'"
        return await self._query_pages(
            "orders.summaries-delta",
            self.settings.acumatica_sales_order_entity,
            page_size,
            max_pages,
            filter_expr=(
                f"CustomerID eq '{quote_odata(baid)}' and LastModified gt {since_literal}"
            ),
            order_by="LastModified desc" if use_order_by else None,
        )

    async def fetch_address_contact_rows(
        self,
        baid: str,
        order_nbrs: list[str],
        cutoff_literal: str | None = None,
        use_order_by: bool = False,
        page_size: int = 500,
    ) -> list[dict[str, Any]]:
        """
        Delivery address and site-contact attributes for a customer's orders.

        ``cutoff_literal`` is an OData literal (e.g. ``datetimeoffset'...'``)
        compared against ``RequestedOn``; it is passed through untouched.
        """
        filter_expr = f"CustomerID eq '{quote_odata(baid)}'"
        if cutoff_literal:
            filter_expr += f" and RequestedOn ge {cutoff_literal}"
        if order_nbrs:
            filter_expr += " and " + _any_of("OrderNbr", order_nbrs)
        return await self._query(
            "orders.address-contact",
            self.settings.acumatica_sales_order_entity,
            filter_expr=filter_expr,
            select=ADDRESS_CONTACT_SELECT,
            custom=ADDRESS_CONTACT_CUSTOM,
            order_by="OrderNbr desc" if use_order_by else None,
            top=page_size,
        )

    # Generic-inquiry reports

    async def fetch_order_ready_report_rows(self) -> list[dict[str, Any]]:
        """Rows of the order-ready inquiry; the OData feed takes basic auth."""
        operation = "reports.order-ready"
        response = await with_timeout(
            self._http.get(
                self.settings.acumatica_order_ready_odata_url,
                auth=(self.settings.acumatica_username, self.settings.acumatica_password),
                headers={"Accept": "application/json"},
            ),
            self.settings.erp_timeout_s(operation),
            operation,
        )
        return to_rows(_payload(response, operation))
