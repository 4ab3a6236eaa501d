from __future__ import annotations

import json
import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.errors import (
    access_error_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantgate.apps.api.response import (
    API_VERSION,
    REQUEST_ID_HEADER,
    data_envelope,
    is_enveloped,
    resolve_request_id,
    should_envelope,
)
from tenantgate.apps.api.routes.access import router as access_router
from tenantgate.apps.api.routes.access_logs import router as access_logs_router
from tenantgate.apps.api.routes.auth import router as auth_router
from tenantgate.apps.api.routes.grants_admin import router as grants_admin_router
from tenantgate.apps.api.routes.health import router as health_router
from tenantgate.apps.api.routes.licenses_admin import router as licenses_admin_router
from tenantgate.apps.api.routes.pricing_admin import router as pricing_admin_router
from tenantgate.core.config import get_settings
from tenantgate.core.errors import AccessError
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


async def _wrap_success(response: Response, request_id: str) -> Response:
    # Wrap versioned JSON bodies in {"data", "meta"} unless already enveloped.
    raw_body = b"".join([chunk async for chunk in response.body_iterator])
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in {"content-length", "content-type"}
    }
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = None
    if payload is None or is_enveloped(payload):
        return Response(
            content=raw_body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.headers.get("content-type"),
        )
    return JSONResponse(
        content=data_envelope(payload, request_id),
        status_code=response.status_code,
        headers=headers,
    )


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="tenantgate API",
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = resolve_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        if should_envelope(request, response):
            response = await _wrap_success(response, request_id)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    app.add_exception_handler(AccessError, access_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(auth_router, prefix=prefix)
    # Application access check; feature routers use require_app_access directly.
    app.include_router(access_router, prefix=prefix)
    app.include_router(licenses_admin_router, prefix=prefix)
    app.include_router(grants_admin_router, prefix=prefix)
    app.include_router(pricing_admin_router, prefix=prefix)
    app.include_router(access_logs_router, prefix=prefix)

    logger.info("app_created name=%s", settings.app_name)
    return app


app = create_app()
