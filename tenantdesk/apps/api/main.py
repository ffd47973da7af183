from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantdesk.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    workspace_predicate_exception_handler,
)
from tenantdesk.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from tenantdesk.apps.api.routes.comments import router as comments_router
from tenantdesk.apps.api.routes.health import router as health_router
from tenantdesk.apps.api.routes.history import router as history_router
from tenantdesk.apps.api.routes.members import router as members_router
from tenantdesk.apps.api.routes.roles import router as roles_router
from tenantdesk.apps.api.routes.tickets import router as tickets_router
from tenantdesk.apps.api.routes.workspaces import router as workspaces_router
from tenantdesk.core.config import get_settings
from tenantdesk.core.errors import TenantDeskError
from tenantdesk.core.logging import configure_logging
from tenantdesk.persistence.db import Database
from tenantdesk.persistence.guards import WorkspacePredicateError


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {f"/{API_VERSION}/health"}


def create_app(database: Database | None = None) -> FastAPI:
    """Build the API around an injected ``Database``.

    When no database is passed one is created from settings; either way it
    is disposed when the application shuts down.
    """
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.database.dispose()

    app = FastAPI(title="TenantDesk API", lifespan=lifespan)
    app.state.database = database or Database(settings=settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%d latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(TenantDeskError)
    async def _domain_exception_handler(request: Request, exc: TenantDeskError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(WorkspacePredicateError)
    async def _workspace_predicate_exception_handler(request: Request, exc: WorkspacePredicateError):
        return await workspace_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(workspaces_router, prefix=f"/{API_VERSION}")
    app.include_router(roles_router, prefix=f"/{API_VERSION}")
    app.include_router(members_router, prefix=f"/{API_VERSION}")
    app.include_router(tickets_router, prefix=f"/{API_VERSION}")
    app.include_router(comments_router, prefix=f"/{API_VERSION}")
    app.include_router(history_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation except the public ones.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="TenantDesk API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app
