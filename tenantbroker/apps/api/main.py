from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantbroker.apps.api.errors import (
    broker_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantbroker.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from tenantbroker.apps.api.routes.credentials import router as credentials_router
from tenantbroker.apps.api.routes.health import router as health_router
from tenantbroker.apps.api.routes.ops import router as ops_router
from tenantbroker.apps.api.routes.storage import router as storage_router
from tenantbroker.core.errors import BrokerError
from tenantbroker.core.logging import configure_logging
from tenantbroker.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Tenant Broker API",
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(BrokerError, broker_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(credentials_router, prefix=f"/{API_VERSION}")
    app.include_router(storage_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
