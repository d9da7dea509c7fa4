import httpx
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from erp_gateway.v1.infra.jobs.models import JobStatus


def test_health_check_success(client: TestClient):
    """Test health check endpoint returns correct format."""
    response = client.get("/v1/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["queue_backend"] == "memory"
    assert health_data["store"]["connected"] is True
    assert health_data["worker"] == {"running": False, "active_tasks": 0}
    assert "X-Request-ID" in response.headers


def test_get_customer_is_accepted(client: TestClient, store, queue):
    response = client.get("/v1/customers/C000123")

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["reused"] is False
    assert store.jobs[data["jobId"]].type == "GET_CUSTOMER"
    assert queue.sent[0]["customerId"] == "C000123"


def test_get_opportunity_is_accepted(client: TestClient, store):
    response = client.get("/v1/opportunities/OP000042")

    assert response.status_code == 202
    job_id = response.json()["data"]["jobId"]
    assert store.jobs[job_id].entity_key == "OP000042"


def test_create_opportunity_requires_idempotency_key(client: TestClient, store):
    response = client.post("/v1/opportunities", json={"Subject": {"value": "Kitchen"}})

    assert response.status_code == 400
    assert response.json()["error"]["category"] == "BAD_REQUEST"
    assert store.jobs == {}


def test_create_opportunity_rejects_empty_payload(client: TestClient):
    response = client.post("/v1/opportunities", json={}, headers={"Idempotency-Key": "k1"})

    assert response.status_code == 422
    assert response.json()["error"]["category"] == "VALIDATION_ERROR"


def test_create_opportunity_replay_returns_same_job(client: TestClient, queue):
    body = {"Subject": {"value": "Kitchen remodel"}}
    headers = {"Idempotency-Key": "order-77"}

    first = client.post("/v1/opportunities", json=body, headers=headers)
    second = client.post("/v1/opportunities", json=body, headers=headers)

    assert first.status_code == second.status_code == 202
    assert first.json()["data"] == {"jobId": first.json()["data"]["jobId"], "reused": False}
    assert second.json()["data"]["jobId"] == first.json()["data"]["jobId"]
    assert second.json()["data"]["reused"] is True
    assert len(queue.sent) == 1


def test_updates_to_same_opportunity_share_a_job(client: TestClient, store, queue):
    first = client.put("/v1/opportunities/OP1", json={"Stage": {"value": "Quote"}})
    second = client.put("/v1/opportunities/OP1", json={"Stage": {"value": "Won"}})

    assert first.status_code == second.status_code == 202
    assert second.json()["data"]["jobId"] == first.json()["data"]["jobId"]
    assert second.json()["data"]["reused"] is True
    assert store.buffers["OP1"].latest_payload == {"Stage": {"value": "Won"}}
    assert len(queue.sent) == 1


def test_erp_job_is_accepted(client: TestClient, store):
    response = client.post(
        "/v1/erp/jobs", json={"type": "ERP_GET_ORDER_HEADER", "payload": {"orderNbr": "SO1"}}
    )

    assert response.status_code == 202
    job = store.jobs[response.json()["data"]["jobId"]]
    assert job.type == "ERP_GET_ORDER_HEADER"
    assert job.payload == {"orderNbr": "SO1"}


def test_erp_jobs_route_accepts_address_contact(client: TestClient, store, queue):
    response = client.post(
        "/v1/erp/jobs",
        json={"type": "ERP_GET_ADDRESS_CONTACT", "payload": {"baid": "BA1"}},
    )

    assert response.status_code == 202
    assert store.jobs[response.json()["data"]["jobId"]].type == "ERP_GET_ADDRESS_CONTACT"
    assert queue.sent[0]["type"] == "ERP_GET_ADDRESS_CONTACT"


def test_erp_jobs_route_rejects_non_erp_types(client: TestClient, store):
    response = client.post("/v1/erp/jobs", json={"type": "GET_CUSTOMER"})

    assert response.status_code == 422
    assert store.jobs == {}


def test_job_status_is_returned(client: TestClient):
    job_id = client.get("/v1/customers/C1").json()["data"]["jobId"]

    response = client.get(f"/v1/jobs/{job_id}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["jobId"] == job_id
    assert data["status"] == "queued"
    assert data["type"] == "GET_CUSTOMER"
    assert data["result"] is None
    assert data["attempts"] == 0


def test_unknown_job_is_not_found(client: TestClient):
    response = client.get("/v1/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"]["category"] == "NOT_FOUND"


def test_admission_limit_returns_429_with_retry_after(client: TestClient, runtime):
    runtime.settings.rate_limit_by_route["GET_CUSTOMER"] = 1

    assert client.get("/v1/customers/C1").status_code == 202
    response = client.get("/v1/customers/C2")

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["error"]["category"] == "RATE_LIMITED"


def test_queue_outage_returns_503(client: TestClient, queue, store):
    async def fail(message):
        raise ConnectionError("queue down")

    queue.send = fail

    response = client.get("/v1/customers/C1")

    assert response.status_code == 503
    job_id = response.json()["error"]["details"]["job_id"]
    assert store.jobs[job_id].status == JobStatus.FAILED.value


def test_api_key_is_required_when_configured(secured_app, auth_headers):
    with TestClient(secured_app) as client:
        assert client.get("/v1/customers/C1").status_code == 401
        assert client.get("/v1/customers/C1", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/v1/customers/C1", headers=auth_headers).status_code == 202


def test_sync_order_header(client: TestClient, fake_erp):
    fake_erp.add("GET", "SalesOrder", [{"OrderNbr": {"value": "SO123"}}])

    response = client.get("/v1/erp/orders/so123/header")

    assert response.status_code == 200
    assert response.json()["data"] == {"found": True, "row": {"OrderNbr": {"value": "SO123"}}}
    [request] = fake_erp.entity_requests()
    assert request.url.params["$filter"] == "OrderNbr eq 'SO123'"


def test_sync_order_header_not_found(client: TestClient):
    response = client.get("/v1/erp/orders/SO404/header")

    assert response.status_code == 200
    assert response.json()["data"] == {"found": False, "row": None}


def test_sync_verify_customer(client: TestClient, fake_erp):
    fake_erp.add("GET", "Customer", [{"CustomerID": {"value": "C1"}}])

    response = client.post(
        "/v1/erp/customers/verify", json={"customer_id": "c1", "zip_code": "12345-6789"}
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True, "matched": True}
    [request] = fake_erp.entity_requests()
    assert request.url.params["$filter"] == "CustomerID eq 'C1' and Zip5 eq '12345'"


def test_sync_verify_customer_rejects_short_zip(client: TestClient):
    response = client.post(
        "/v1/erp/customers/verify", json={"customer_id": "C1", "zip_code": "12a4b"}
    )

    assert response.status_code == 422


def test_sync_payment_info(client: TestClient, fake_erp):
    fake_erp.add("GET", "Payment", [{"OrderNbr": {"value": "SO1"}}])

    response = client.post(
        "/v1/erp/orders/payment-info", json={"baid": " ba1 ", "orderNbrs": ["so1", "SO1"]}
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"rows": [{"OrderNbr": {"value": "SO1"}}]}
    [request] = fake_erp.entity_requests()
    assert request.url.params["$filter"] == "CustomerID eq 'BA1' and (OrderNbr eq 'SO1')"


def test_sync_payment_info_requires_baid(client: TestClient, fake_erp):
    response = client.post("/v1/erp/orders/payment-info", json={"baid": "  "})

    assert response.status_code == 422
    assert fake_erp.entity_requests() == []


def test_sync_last_modified(client: TestClient, fake_erp):
    fake_erp.add("GET", "SalesOrder", [{"LastModified": {"value": "2026-10-02T10:00:00Z"}}])

    response = client.get("/v1/erp/orders/last-modified", params={"baid": "ba1", "orderNbr": "so1"})

    assert response.status_code == 200
    assert response.json()["data"] == {"lastModified": "2026-10-02T10:00:00Z"}


def test_sync_last_modified_requires_order_number(client: TestClient):
    response = client.get("/v1/erp/orders/last-modified", params={"baid": "BA1"})

    assert response.status_code == 422


def test_sync_order_summaries(client: TestClient, fake_erp):
    fake_erp.add("GET", "SalesOrder", [{"OrderNbr": {"value": "SO1"}}])

    response = client.get(
        "/v1/erp/orders/summaries", params={"baid": "ba1", "pageSize": 5, "useOrderBy": "true"}
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"rows": [{"OrderNbr": {"value": "SO1"}}]}
    [request] = fake_erp.entity_requests()
    assert request.url.params["$top"] == "5"
    assert request.url.params["$orderby"] == "RequestedOn desc"


def test_sync_order_summaries_delta(client: TestClient, fake_erp):
    response = client.get(
        "/v1/erp/orders/summaries/delta",
        params={"baid": "BA1", "since": "2026-10-01T00:00:00Z", "maxPages": 1},
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"rows": []}
    [request] = fake_erp.entity_requests()
    assert "LastModified gt datetimeoffset'2026-10-01T00:00:00Z'" in request.url.params["$filter"]


def test_sync_address_contact(client: TestClient, fake_erp):
    response = client.post(
        "/v1/erp/orders/address-contact",
        json={"baid": "ba1", "orderNbrs": ["so2"], "cutoffLiteral": "", "pageSize": 20},
    )

    assert response.status_code == 200
    [request] = fake_erp.entity_requests()
    assert request.url.params["$filter"] == "CustomerID eq 'BA1' and (OrderNbr eq 'SO2')"
    assert request.url.params["$top"] == "20"
    assert "$custom" in request.url.params


def test_sync_address_contact_rejects_zero_page_size(client: TestClient):
    response = client.post(
        "/v1/erp/orders/address-contact", json={"baid": "BA1", "pageSize": 0}
    )

    assert response.status_code == 422


def test_sync_order_ready_report(client: TestClient, runtime, fake_erp):
    runtime.settings.acumatica_order_ready_odata_url = "https://erp.test/OData/MLD/OrderReady"
    fake_erp.add("GET", "OrderReady", {"value": [{"OrderNbr": "SO7"}]})

    response = client.get("/v1/erp/reports/order-ready")

    assert response.status_code == 200
    assert response.json()["data"] == {"rows": [{"OrderNbr": "SO7"}]}


def test_sync_upstream_server_error_is_bad_gateway(client: TestClient, fake_erp):
    fake_erp.add("GET", "SalesOrder", lambda request: httpx.Response(500, text="boom"))

    response = client.get("/v1/erp/orders/SO1/header")

    assert response.status_code == 502
    # erp_retry_max_attempts defaults to 3
    assert len(fake_erp.entity_requests()) == 3


def test_sync_upstream_client_error_passes_through(client: TestClient, fake_erp):
    fake_erp.add("GET", "SalesOrder", lambda request: httpx.Response(404, text="missing"))

    response = client.get("/v1/erp/orders/SO1/header")

    assert response.status_code == 404
    assert len(fake_erp.entity_requests()) == 1


@pytest.mark.asyncio
async def test_queued_job_runs_through_worker(app, runtime, queue, fake_erp):
    fake_erp.add("GET", "SalesOrder", [{"OrderNbr": {"value": "SO9"}}])
    app.state.runtime = runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        accepted = await ac.post(
            "/v1/erp/jobs", json={"type": "ERP_GET_ORDER_HEADER", "payload": {"orderNbr": "so9"}}
        )
        job_id = accepted.json()["data"]["jobId"]

        [received] = await queue.receive(1, 0.5)
        await runtime.consumer.handle_message(received)

        response = await ac.get(f"/v1/jobs/{job_id}")

    data = response.json()["data"]
    assert data["status"] == "succeeded"
    assert data["attempts"] == 1
    assert data["result"] == {"found": True, "row": {"OrderNbr": {"value": "SO9"}}}
