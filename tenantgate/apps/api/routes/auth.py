from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import get_db
from tenantgate.apps.api.rate_limit import enforce_auth_rate_limit
from tenantgate.core.config import get_settings
from tenantgate.core.errors import TokenError, Unauthenticated
from tenantgate.persistence.repos.directory import get_user
from tenantgate.services.access.grants import compute_allowed_apps
from tenantgate.services.auth.tokens import issue_token, parse_authorization_header, resolve_principal


router = APIRouter(prefix="/auth", tags=["auth"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    allowed_apps: list[str]


@router.post("/refresh")
async def refresh_token(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    # Count failed attempts too, so token guessing hits the same limit.
    principal = None
    token_error: TokenError | None = None
    try:
        token = parse_authorization_header(request.headers.get("Authorization"))
        if token is not None:
            principal = await resolve_principal(db, token)
    except TokenError as exc:
        token_error = exc
    await enforce_auth_rate_limit(request, principal.user_id if principal else None)
    if token_error is not None:
        raise token_error
    if principal is None:
        raise Unauthenticated(headers={"WWW-Authenticate": "Bearer"})

    user = await get_user(db, principal.user_id)
    if user is None:
        raise Unauthenticated()
    allowed_apps: list[str] = []
    if user.tenant_id:
        allowed_apps = await compute_allowed_apps(db, user_id=user.id, tenant_id=user.tenant_id)
    settings = get_settings()
    return TokenResponse(
        access_token=issue_token(user, allowed_apps=allowed_apps),
        expires_in=settings.jwt_ttl_seconds,
        allowed_apps=allowed_apps,
    )
