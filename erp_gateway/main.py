import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from erp_gateway.config.logging import setup_logging
from erp_gateway.config.settings import settings
from erp_gateway.infra.runtime import Runtime, build_runtime
from erp_gateway.v1.core.exceptions import (
    GatewayException,
    RequestContextMiddleware,
    gateway_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from erp_gateway.v1.erp.routes import router as erp_router
from erp_gateway.v1.healthz import router as health_router
from erp_gateway.v1.infra.jobs.routes import router as jobs_router


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    An injected ``runtime`` is used as is and left open on shutdown; without
    one the lifespan builds it from settings and closes it afterwards.
    """

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime if runtime is not None else build_runtime(settings)

        consumer_task = None
        consumer = app.state.runtime.consumer
        if owned and consumer is not None:
            consumer_task = asyncio.create_task(consumer.start())

        try:
            yield
        finally:
            if consumer_task is not None:
                await consumer.stop()
                consumer_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer_task
            if owned:
                await app.state.runtime.close()

    app = FastAPI(
        title=settings.app_name,
        description="Job gateway protecting a rate-limited ERP",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints live under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(GatewayException, gateway_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1", tags=["jobs"])
    app.include_router(erp_router, prefix="/v1", tags=["erp"])

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "erp_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
