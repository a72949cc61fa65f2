from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskcoda.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    taskcoda_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from taskcoda.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from taskcoda.apps.api.routes.admin import router as admin_router
from taskcoda.apps.api.routes.audit import router as audit_router
from taskcoda.apps.api.routes.billing import router as billing_router
from taskcoda.apps.api.routes.chat import router as chat_router
from taskcoda.apps.api.routes.chat_history import router as chat_history_router
from taskcoda.apps.api.routes.feature_flags import router as feature_flags_router
from taskcoda.apps.api.routes.health import router as health_router
from taskcoda.apps.api.routes.organizations import router as organizations_router
from taskcoda.apps.api.routes.usage import router as usage_router
from taskcoda.apps.api.routes.webhooks import router as webhooks_router
from taskcoda.core.errors import TaskcodaError
from taskcoda.core.logging import configure_logging


logger = logging.getLogger(__name__)

# Public endpoints authenticate themselves (chat) or not at all.
_PUBLIC_PATHS = {"/health", "/payments/webhook"}


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Taskcoda API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(TaskcodaError)
    async def _taskcoda_error_handler(request: Request, exc: TaskcodaError):
        return await taskcoda_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Unversioned surfaces keep their fixed paths and bespoke bodies.
    app.include_router(chat_router)
    app.include_router(webhooks_router)
    app.include_router(health_router)

    # Mount versioned v1 API routes.
    app.include_router(organizations_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")
    app.include_router(chat_history_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(feature_flags_router, prefix=f"/{API_VERSION}")
    # Super-admin console endpoints.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Taskcoda API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Taskcoda API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
