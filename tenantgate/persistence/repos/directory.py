from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import Application, Tenant, User


async def get_application_by_slug(
    session: AsyncSession,
    slug: str,
    *,
    include_inactive: bool = False,
) -> Application | None:
    # Retired applications resolve as missing unless an admin asks for them.
    stmt = select(Application).where(Application.slug == slug)
    if not include_inactive:
        stmt = stmt.where(Application.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant).where(Tenant.id == tenant_id, Tenant.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_tenant_user(session: AsyncSession, *, tenant_id: str, user_id: str) -> User | None:
    # Never resolve a user through another tenant's admin surface.
    result = await session.execute(
        select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()
