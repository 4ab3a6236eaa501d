from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantgate.core.clock import utc_now
from tenantgate.domain.models import AuditEvent
from tenantgate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_FRAGMENTS = ("authorization", "token", "secret", "password", "jwt")
_REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class RequestMeta:
    # Client hints copied onto audit rows; never carries credentials.
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    path: str | None = None
    method: str | None = None


def sanitize_metadata(value: Any) -> Any:
    # Recursively redact credential-looking keys before persisting metadata.
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS):
                cleaned[key] = _REDACTED
            else:
                cleaned[key] = sanitize_metadata(raw_value)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_meta(request: Request | None) -> RequestMeta:
    if request is None:
        return RequestMeta()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return RequestMeta(
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_meta: RequestMeta | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    best_effort: bool = True,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> None:
    # Administrative audit rows; a failed write is logged and never undoes the action.
    meta = request_meta or RequestMeta()
    event = AuditEvent(
        occurred_at=utc_now(),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=meta.request_id,
        ip_address=meta.ip_address,
        user_agent=meta.user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        try:
            session.add(event)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            _log_write_failure(event_type, meta.request_id, exc, best_effort)
            if not best_effort:
                raise
        return

    factory = session_factory or SessionLocal
    async with factory() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            _log_write_failure(event_type, meta.request_id, exc, best_effort)
            if not best_effort:
                raise


def _log_write_failure(event_type: str, request_id: str | None, exc: Exception, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level(
        "audit_event_write_failed event_type=%s request_id=%s",
        event_type,
        request_id,
        exc_info=exc,
    )
