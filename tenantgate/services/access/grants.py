from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import as_utc, utc_now
from tenantgate.core.config import get_settings
from tenantgate.core.errors import (
    AccessError,
    ApplicationNotFound,
    DatabaseError,
    DuplicateGrant,
    GrantNotFound,
    NoTenantLicense,
    PricingNotConfigured,
    SeatLimitExceeded,
    UserNotFound,
)
from tenantgate.domain.models import Application, TenantApplicationLicense, UserApplicationGrant
from tenantgate.persistence.guards import tenant_predicate, tenant_select
from tenantgate.persistence.repos.directory import get_application_by_slug, get_tenant_user
from tenantgate.services.access import licenses
from tenantgate.services.access.pricing import get_current_price
from tenantgate.services.access.roles import normalize_application_role


logger = logging.getLogger(__name__)

SYSTEM_EXPIRY_ACTOR = "system:grant-expiry"


@dataclass(frozen=True)
class GrantRequest:
    tenant_id: str
    user_id: str
    application_slug: str
    granted_by: str | None
    role_in_app: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class GrantOutcome:
    # The written grant plus the license seat counters after the change.
    grant: UserApplicationGrant
    application: Application
    seats_used: int
    seat_capacity: int | None


def _grant_is_current(grant: UserApplicationGrant, now: datetime) -> bool:
    expires_at = as_utc(grant.expires_at)
    return grant.is_active and (expires_at is None or expires_at > now)


async def has_access(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    application_slug: str,
    now: datetime | None = None,
) -> UserApplicationGrant | None:
    # Authoritative lookup: active and not past its expiry.
    instant = now or utc_now()
    result = await session.execute(
        select(UserApplicationGrant)
        .join(Application, Application.id == UserApplicationGrant.application_id)
        .where(
            tenant_predicate(UserApplicationGrant, tenant_id),
            UserApplicationGrant.user_id == user_id,
            Application.slug == application_slug,
            UserApplicationGrant.is_active.is_(True),
            or_(UserApplicationGrant.expires_at.is_(None), UserApplicationGrant.expires_at > instant),
        )
    )
    return result.scalar_one_or_none()


async def _find_active_grant(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    application_id: str,
) -> UserApplicationGrant | None:
    # Includes grants past their expiry that still hold the active slot.
    result = await session.execute(
        tenant_select(UserApplicationGrant, tenant_id).where(
            UserApplicationGrant.user_id == user_id,
            UserApplicationGrant.application_id == application_id,
            UserApplicationGrant.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def list_user_grants(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    active_only: bool = True,
) -> list[tuple[UserApplicationGrant, Application]]:
    stmt = (
        select(UserApplicationGrant, Application)
        .join(Application, Application.id == UserApplicationGrant.application_id)
        .where(
            tenant_predicate(UserApplicationGrant, tenant_id),
            UserApplicationGrant.user_id == user_id,
        )
        .order_by(Application.slug, UserApplicationGrant.granted_at.desc())
    )
    if active_only:
        stmt = stmt.where(UserApplicationGrant.is_active.is_(True))
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def compute_allowed_apps(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    now: datetime | None = None,
) -> list[str]:
    # Slugs baked into tokens: current grants whose tenant license is usable.
    instant = now or utc_now()
    stmt = (
        select(Application.slug)
        .join(UserApplicationGrant, UserApplicationGrant.application_id == Application.id)
        .join(
            TenantApplicationLicense,
            (TenantApplicationLicense.application_id == Application.id)
            & (TenantApplicationLicense.tenant_id == UserApplicationGrant.tenant_id),
        )
        .where(
            tenant_predicate(UserApplicationGrant, tenant_id),
            UserApplicationGrant.user_id == user_id,
            UserApplicationGrant.is_active.is_(True),
            or_(UserApplicationGrant.expires_at.is_(None), UserApplicationGrant.expires_at > instant),
            Application.is_active.is_(True),
            TenantApplicationLicense.status == "active",
            or_(TenantApplicationLicense.expires_at.is_(None), TenantApplicationLicense.expires_at > instant),
        )
        .order_by(Application.slug)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _deactivate(
    session: AsyncSession,
    grant: UserApplicationGrant,
    *,
    revoked_by: str | None,
    now: datetime,
) -> bool:
    # Conditional on is_active so only one concurrent revoke releases the seat.
    result = await session.execute(
        update(UserApplicationGrant)
        .where(UserApplicationGrant.id == grant.id, UserApplicationGrant.is_active.is_(True))
        .values(is_active=False, revoked_at=now, revoked_by=revoked_by)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await licenses.decrement_seats(
        session,
        tenant_id=grant.tenant_id,
        application_id=grant.application_id,
        commit=False,
    )
    return True


async def grant_access(session: AsyncSession, request: GrantRequest) -> GrantOutcome:
    """Grant one user access to one application inside their tenant.

    Validation runs before any write: usable license, no current grant,
    a free seat, and a price for the user's current user type. The grant
    row and the seat increment then commit together or not at all.
    """
    now = utc_now()
    try:
        application = await get_application_by_slug(session, request.application_slug)
        if application is None:
            raise ApplicationNotFound(
                f"Application '{request.application_slug}' not found",
                details={"application_slug": request.application_slug},
            )
        user = await get_tenant_user(session, tenant_id=request.tenant_id, user_id=request.user_id)
        if user is None:
            raise UserNotFound(
                "User not found in tenant",
                details={"user_id": request.user_id},
            )
        role_in_app = normalize_application_role(
            request.role_in_app or user.role or get_settings().default_application_role
        )

        license_row = await licenses.get_license(
            session,
            tenant_id=request.tenant_id,
            application_id=application.id,
            for_update=True,
        )
        if license_row is None or not licenses.is_license_usable(license_row, now=now):
            raise NoTenantLicense(
                f"Tenant has no active license for '{application.slug}'",
                details={"application_slug": application.slug},
            )

        existing = await _find_active_grant(
            session,
            user_id=request.user_id,
            tenant_id=request.tenant_id,
            application_id=application.id,
        )
        if existing is not None:
            if _grant_is_current(existing, now):
                raise DuplicateGrant(
                    f"User already has active access to '{application.slug}'",
                    details={"grant_id": existing.id},
                )
            # Retire the lapsed grant so its seat and active slot are released first.
            await _deactivate(session, existing, revoked_by=SYSTEM_EXPIRY_ACTOR, now=now)
            await session.refresh(license_row)

        seats = licenses.seat_info(license_row)
        if seats is not None and seats.available < 1:
            raise SeatLimitExceeded(
                f"Seat limit reached: using {seats.used}/{seats.capacity} seats",
                details={"seat_capacity": seats.capacity, "seats_used": seats.used},
            )

        if user.user_type_id is None:
            raise PricingNotConfigured(
                f"User has no user type; cannot price '{application.slug}'",
                details={"application_id": application.id, "user_type_id": None},
            )
        pricing = await get_current_price(
            session,
            application_id=application.id,
            user_type_id=user.user_type_id,
            at=now,
        )
        if pricing is None:
            raise PricingNotConfigured(
                f"No pricing for application '{application.slug}' and user type '{user.user_type_id}'",
                details={"application_id": application.id, "user_type_id": user.user_type_id},
            )

        grant = UserApplicationGrant(
            user_id=request.user_id,
            tenant_id=request.tenant_id,
            application_id=application.id,
            is_active=True,
            role_in_app=role_in_app,
            granted_at=now,
            granted_by=request.granted_by,
            expires_at=request.expires_at,
            price_snapshot=pricing.price,
            currency_snapshot=pricing.currency,
            billing_cycle_snapshot=pricing.billing_cycle,
            user_type_id_snapshot=user.user_type_id,
            pricing_id_snapshot=pricing.id,
        )
        session.add(grant)
        await session.flush()

        incremented = await licenses.increment_seats(
            session,
            tenant_id=request.tenant_id,
            application_id=application.id,
            commit=False,
        )
        if not incremented:
            # Lost a race for the last seat; nothing from this grant survives.
            raise SeatLimitExceeded(
                f"Seat limit reached: {license_row.seat_capacity} seats",
                details={"seat_capacity": license_row.seat_capacity},
            )
        await session.commit()
        await session.refresh(license_row)
    except AccessError:
        await session.rollback()
        raise
    except IntegrityError as exc:
        # The partial unique index caught a concurrent grant for the same triple.
        await session.rollback()
        raise DuplicateGrant(
            f"User already has active access to '{request.application_slug}'",
            details={"application_slug": request.application_slug},
        ) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while granting access") from exc

    logger.info(
        "access_granted tenant_id=%s user_id=%s application=%s role=%s seats_used=%s",
        request.tenant_id,
        request.user_id,
        application.slug,
        role_in_app,
        license_row.seats_used,
    )
    return GrantOutcome(
        grant=grant,
        application=application,
        seats_used=license_row.seats_used,
        seat_capacity=license_row.seat_capacity,
    )


async def _revoke(
    session: AsyncSession,
    grant: UserApplicationGrant,
    *,
    revoked_by: str | None,
) -> UserApplicationGrant:
    if not grant.is_active:
        # Already revoked; repeat calls are a no-op and never touch seats.
        return grant
    try:
        released = await _deactivate(session, grant, revoked_by=revoked_by, now=utc_now())
        await session.commit()
        await session.refresh(grant)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while revoking access") from exc
    if released:
        logger.info(
            "access_revoked tenant_id=%s user_id=%s application_id=%s grant_id=%s",
            grant.tenant_id,
            grant.user_id,
            grant.application_id,
            grant.id,
        )
    return grant


async def revoke_access(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    application_slug: str,
    revoked_by: str | None,
) -> UserApplicationGrant:
    # Revoke by (user, tenant, application); targets the newest grant row.
    application = await get_application_by_slug(session, application_slug, include_inactive=True)
    if application is None:
        raise ApplicationNotFound(
            f"Application '{application_slug}' not found",
            details={"application_slug": application_slug},
        )
    result = await session.execute(
        tenant_select(UserApplicationGrant, tenant_id)
        .where(
            UserApplicationGrant.user_id == user_id,
            UserApplicationGrant.application_id == application.id,
        )
        .order_by(UserApplicationGrant.is_active.desc(), UserApplicationGrant.granted_at.desc())
        .limit(1)
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise GrantNotFound(
            f"No access grant for '{application_slug}'",
            details={"application_slug": application_slug, "user_id": user_id},
        )
    return await _revoke(session, grant, revoked_by=revoked_by)


async def revoke_grant(
    session: AsyncSession,
    *,
    tenant_id: str,
    grant_id: str,
    revoked_by: str | None,
) -> UserApplicationGrant:
    result = await session.execute(
        tenant_select(UserApplicationGrant, tenant_id).where(UserApplicationGrant.id == grant_id)
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise GrantNotFound("Access grant not found", details={"grant_id": grant_id})
    return await _revoke(session, grant, revoked_by=revoked_by)
