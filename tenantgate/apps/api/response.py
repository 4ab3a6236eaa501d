from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request, Response
from pydantic import BaseModel, Field

from tenantgate.core.errors import AccessError


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

# Schema and docs stay raw so client generators can read them.
_UNWRAPPED_PATHS = (f"/{API_VERSION}/openapi.json", f"/{API_VERSION}/docs")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorBody(BaseModel):
    # Stable reason code (e.g. NO_TENANT_LICENSE) plus a human-readable message.
    code: str
    message: str
    details: dict[str, Any] | None = None


def resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
    return request_id


def should_envelope(request: Request, response: Response) -> bool:
    path = request.url.path
    return (
        path.startswith(f"/{API_VERSION}")
        and not path.startswith(_UNWRAPPED_PATHS)
        and response.status_code < 400
        and response.headers.get("content-type", "").startswith("application/json")
    )


def is_enveloped(payload: Any) -> bool:
    return isinstance(payload, dict) and "data" in payload and isinstance(payload.get("meta"), dict)


def data_envelope(payload: Any, request_id: str) -> dict[str, Any]:
    return {"data": payload, "meta": ResponseMeta(request_id=request_id).model_dump()}


def error_envelope(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details or None)
    meta = ResponseMeta(request_id=resolve_request_id(request))
    return {"error": body.model_dump(exclude_none=True), "meta": meta.model_dump()}


def access_error_envelope(request: Request, exc: AccessError) -> dict[str, Any]:
    # Every denial carries its reason code so clients can branch on it.
    return error_envelope(request=request, code=exc.code, message=exc.message, details=exc.details)
