from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from imagevault.apps.api.errors import (
    http_exception_handler,
    imagevault_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from imagevault.apps.api.response import API_VERSION
from imagevault.apps.api.routes.billing import router as billing_router
from imagevault.apps.api.routes.health import router as health_router
from imagevault.apps.api.routes.images import router as images_router
from imagevault.apps.api.routes.storage_accounts import router as storage_accounts_router
from imagevault.core.errors import ImageVaultError
from imagevault.core.logging import configure_logging
from imagevault.services.telemetry import record_request


_IDENTITY_HEADERS = ("X-User-Id", "X-Org-Id", "X-Role")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="ImageVault API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(ImageVaultError)
    async def _imagevault_exception_handler(request: Request, exc: ImageVaultError):
        return await imagevault_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(images_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")
    # Operator endpoints for the storage account pool.
    app.include_router(storage_accounts_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="ImageVault API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the trusted identity headers forwarded by the gateway.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="ImageVault API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        for header in _IDENTITY_HEADERS:
            security_schemes[header] = {"type": "apiKey", "in": "header", "name": header}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"X-User-Id": [], "X-Org-Id": [], "X-Role": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
