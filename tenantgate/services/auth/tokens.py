from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable

import jwt
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import utc_now
from tenantgate.core.config import get_settings
from tenantgate.core.errors import AccountInactive, TokenExpired, TokenInvalid
from tenantgate.domain.models import User
from tenantgate.persistence.repos.directory import get_user


logger = logging.getLogger(__name__)

_TOKEN_TYPE = "access"


class Principal(BaseModel):
    # Verified identity for one request: token claims merged with a fresh user lookup.
    user_id: str
    tenant_id: str | None
    role: str
    platform_role: str | None = None
    user_type_id: str | None = None
    # Fast-path cache of application slugs, computed when the token was issued.
    allowed_apps: list[str] = Field(default_factory=list)
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def is_platform_admin(self) -> bool:
        return bool(self.platform_role) and self.platform_role == get_settings().platform_admin_role


def parse_authorization_header(header_value: str | None) -> str | None:
    # Accept "Bearer <token>" as well as a bare token.
    if not header_value:
        return None
    parts = header_value.strip().split()
    if not parts:
        return None
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    if len(parts) == 1:
        return parts[0]
    raise TokenInvalid("Malformed Authorization header")


def issue_token(
    user: User,
    *,
    allowed_apps: Iterable[str],
    now: datetime | None = None,
    ttl_seconds: int | None = None,
) -> str:
    settings = get_settings()
    issued_at = now or utc_now()
    ttl = ttl_seconds if ttl_seconds is not None else settings.jwt_ttl_seconds
    claims: dict[str, Any] = {
        "sub": user.id,
        "tid": user.tenant_id,
        "role": user.role,
        "prole": user.platform_role,
        "utype": user.user_type_id,
        "apps": sorted(set(allowed_apps)),
        "typ": _TOKEN_TYPE,
        "iss": settings.jwt_issuer,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl)).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    # Signature, expiry and issuer are verified here; identity is checked by the caller.
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            leeway=settings.jwt_leeway_seconds,
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalid() from exc
    if claims.get("typ") != _TOKEN_TYPE:
        raise TokenInvalid("Unsupported token type")
    return claims


def _claim_time(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


async def resolve_principal(session: AsyncSession, token: str) -> Principal:
    claims = decode_token(token)
    user = await get_user(session, str(claims["sub"]))
    if user is None:
        raise TokenInvalid("Token subject no longer exists")
    if not user.is_active:
        logger.info("token_rejected_inactive_user user_id=%s", user.id)
        raise AccountInactive()
    if claims.get("tid") != user.tenant_id:
        # A user moved between tenants must re-authenticate.
        raise TokenInvalid("Token tenant does not match user")
    apps = claims.get("apps") or []
    if not isinstance(apps, list):
        raise TokenInvalid("Malformed allowed applications claim")
    # Roles come from the fresh lookup so demotions apply before token expiry.
    return Principal(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        platform_role=user.platform_role,
        user_type_id=user.user_type_id,
        allowed_apps=[str(slug) for slug in apps],
        issued_at=_claim_time(claims.get("iat")),
        expires_at=_claim_time(claims.get("exp")),
    )
