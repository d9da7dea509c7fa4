from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from erp_gateway.config.settings import QueueBackend, Settings, get_settings
from erp_gateway.infra.queue import MemoryJobQueue
from erp_gateway.infra.runtime import Runtime, build_consumer
from erp_gateway.main import create_app
from erp_gateway.v1.core.rate_limit import AdmissionRateLimiter
from erp_gateway.v1.erp.client import AcumaticaClient
from erp_gateway.v1.erp.protection import UpstreamProtection
from erp_gateway.v1.infra.jobs.service import JobService
from erp_gateway.v1.infra.jobs.store import MemoryJobStore
from tests.fakes import FakeAcumatica


@pytest.fixture
def settings() -> Settings:
    """Settings for an in-process runtime with no coalescing delay."""
    return Settings(
        queue_backend=QueueBackend.MEMORY,
        acumatica_base_url="https://erp.test",
        acumatica_client_id="client",
        acumatica_client_secret="secret",
        acumatica_username="svc",
        acumatica_password="pw",
        update_coalesce_window_ms=0,
        erp_retry_base_ms=0,
        erp_retry_jitter_ms=0,
    )


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def queue() -> MemoryJobQueue:
    return MemoryJobQueue()


@pytest.fixture
def service(settings, store, queue) -> JobService:
    return JobService(settings, store, queue)


@pytest.fixture
def fake_erp() -> FakeAcumatica:
    return FakeAcumatica()


@pytest.fixture
def erp_client(settings, fake_erp) -> AcumaticaClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_erp))
    return AcumaticaClient(settings, http_client=http_client)


@pytest.fixture
def runtime(settings, store, queue, service, erp_client) -> Runtime:
    """Memory runtime with a consumer that is built but not started."""
    runtime = Runtime(
        settings=settings,
        store=store,
        queue=queue,
        service=service,
        admission=AdmissionRateLimiter(store, settings),
        client=erp_client,
        protection=UpstreamProtection(settings),
    )
    runtime.consumer = build_consumer(settings, store, queue, service, erp_client)
    return runtime


@pytest.fixture
def app(runtime):
    """Create a test FastAPI application around the memory runtime."""
    app = create_app(runtime)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def secured_app(app):
    """Application requiring the X-API-Key header."""
    app.dependency_overrides[get_settings] = lambda: Settings(api_key="test-key")
    return app


@pytest.fixture
def auth_headers():
    return {"X-API-Key": "test-key"}
