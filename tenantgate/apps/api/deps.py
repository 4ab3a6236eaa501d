from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.config import get_settings
from tenantgate.core.errors import TokenError, Unauthenticated
from tenantgate.persistence.db import get_session
from tenantgate.services.access.decision import AccessContext, AccessRequest, get_authorization_engine
from tenantgate.services.audit import get_request_meta, record_event
from tenantgate.services.auth.tokens import Principal, parse_authorization_header, resolve_principal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "FORBIDDEN", "message": message},
    )


async def _principal_from_request(request: Request, db: AsyncSession) -> Principal | None:
    token = parse_authorization_header(request.headers.get("Authorization"))
    if token is None:
        return None
    return await resolve_principal(db, token)


async def get_optional_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal | None:
    principal = await _principal_from_request(request, db)
    request.state.principal = principal
    return principal


async def get_principal(
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise Unauthenticated(headers={"WWW-Authenticate": "Bearer"})
    return principal


def requested_tenant_id(request: Request) -> str | None:
    value = request.headers.get(get_settings().tenant_header)
    return value.strip() if value and value.strip() else None


async def authorize_request(
    request: Request,
    db: AsyncSession,
    *,
    application_slug: str,
    required_role: str | None = None,
) -> AccessContext:
    # Run the decision pipeline and attach the resulting context to request.state.
    engine = get_authorization_engine()
    request_meta = get_request_meta(request)
    tenant_id = requested_tenant_id(request)
    try:
        principal = await _principal_from_request(request, db)
    except TokenError as exc:
        # Token failures stop before the pipeline but still leave a denied entry.
        await engine.record_denial(
            AccessRequest(
                principal=None,
                tenant_id=tenant_id,
                application_slug=application_slug,
                required_role=required_role,
                request_meta=request_meta,
            ),
            exc,
        )
        raise
    request.state.principal = principal
    context = await engine.evaluate(
        db,
        AccessRequest(
            principal=principal,
            tenant_id=tenant_id,
            application_slug=application_slug,
            required_role=required_role,
            request_meta=request_meta,
        ),
    )
    request.state.app_access = context
    return context


def require_app_access(application_slug: str, role_in_app: str | None = None):
    # Dependency factory guarding routes that belong to one application.
    async def _dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
    ) -> AccessContext:
        return await authorize_request(
            request,
            db,
            application_slug=application_slug,
            required_role=role_in_app,
        )

    return _dependency


async def record_admin_event(
    request: Request,
    db: AsyncSession,
    principal: Principal,
    *,
    tenant_id: str | None,
    event_type: str,
    resource_type: str,
    resource_id: str | None,
    metadata: dict | None = None,
) -> None:
    # Successful administrative mutations; written after the mutation has committed.
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type="platform_admin" if principal.is_platform_admin() else "user",
        actor_id=principal.user_id,
        actor_role=principal.platform_role or principal.role,
        event_type=event_type,
        outcome="success",
        resource_type=resource_type,
        resource_id=resource_id,
        request_meta=get_request_meta(request),
        metadata=metadata,
    )


async def _record_forbidden(request: Request, db: AsyncSession, principal: Principal, scope: str) -> None:
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type="user",
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="rbac.forbidden",
        outcome="failure",
        resource_type="admin",
        request_meta=get_request_meta(request),
        metadata={"required_scope": scope},
        error_code="FORBIDDEN",
    )


async def require_tenant_admin(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Platform staff manage any tenant; tenant admins only their own.
    if principal.is_platform_admin():
        return principal
    if principal.tenant_id == tenant_id and principal.role == "admin":
        return principal
    await _record_forbidden(request, db, principal, f"tenant_admin:{tenant_id}")
    raise _forbidden_error("Tenant admin role required for this tenant")


async def require_platform_admin(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    if principal.is_platform_admin():
        return principal
    await _record_forbidden(request, db, principal, "platform_admin")
    raise _forbidden_error("Platform admin role required")
