from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import as_utc, utc_now
from tenantgate.core.errors import (
    ApplicationNotFound,
    DatabaseError,
    DuplicateLicense,
    InvalidSeatCapacity,
    LicenseNotFound,
    TenantContextMissing,
)
from tenantgate.domain.models import (
    LICENSE_ACTIVE,
    LICENSE_EXPIRED,
    LICENSE_SUSPENDED,
    Application,
    TenantApplicationLicense,
)
from tenantgate.persistence.guards import tenant_predicate, tenant_select
from tenantgate.persistence.repos.directory import get_active_tenant, get_application_by_slug


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeatInfo:
    # Finite seat accounting for one license; unlimited licenses have no SeatInfo.
    capacity: int
    used: int

    @property
    def available(self) -> int:
        # Zero or negative means no seat is left.
        return self.capacity - self.used


def is_license_usable(license_row: TenantApplicationLicense, *, now: datetime | None = None) -> bool:
    if license_row.status != LICENSE_ACTIVE:
        return False
    expires_at = as_utc(license_row.expires_at)
    return expires_at is None or expires_at > (now or utc_now())


def seat_info(license_row: TenantApplicationLicense) -> SeatInfo | None:
    if license_row.seat_capacity is None:
        return None
    return SeatInfo(capacity=license_row.seat_capacity, used=license_row.seats_used)


def _usable_clause(now: datetime) -> tuple[object, object]:
    return (
        TenantApplicationLicense.status == LICENSE_ACTIVE,
        or_(TenantApplicationLicense.expires_at.is_(None), TenantApplicationLicense.expires_at > now),
    )


async def get_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str,
    for_update: bool = False,
) -> TenantApplicationLicense | None:
    # Return the license row in any status.
    stmt = tenant_select(TenantApplicationLicense, tenant_id).where(
        TenantApplicationLicense.application_id == application_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_usable_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str,
    now: datetime | None = None,
) -> TenantApplicationLicense | None:
    stmt = tenant_select(TenantApplicationLicense, tenant_id).where(
        TenantApplicationLicense.application_id == application_id,
        *_usable_clause(now or utc_now()),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def check_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_slug: str,
    now: datetime | None = None,
) -> TenantApplicationLicense | None:
    # Missing, expired and suspended licenses all come back as None.
    stmt = (
        select(TenantApplicationLicense)
        .join(Application, Application.id == TenantApplicationLicense.application_id)
        .where(
            tenant_predicate(TenantApplicationLicense, tenant_id),
            Application.slug == application_slug,
            *_usable_clause(now or utc_now()),
        )
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def check_seat_availability(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str,
) -> SeatInfo | None:
    # None for unlimited capacity or when no license row exists.
    license_row = await get_license(session, tenant_id=tenant_id, application_id=application_id)
    if license_row is None:
        return None
    return seat_info(license_row)


async def increment_seats(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str,
    commit: bool = True,
) -> bool:
    # Single conditional UPDATE; concurrent callers can never push seats past capacity.
    result = await session.execute(
        update(TenantApplicationLicense)
        .where(
            tenant_predicate(TenantApplicationLicense, tenant_id),
            TenantApplicationLicense.application_id == application_id,
            TenantApplicationLicense.status == LICENSE_ACTIVE,
            or_(
                TenantApplicationLicense.seat_capacity.is_(None),
                TenantApplicationLicense.seats_used < TenantApplicationLicense.seat_capacity,
            ),
        )
        .values(seats_used=TenantApplicationLicense.seats_used + 1, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return result.rowcount == 1


async def decrement_seats(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str,
    commit: bool = True,
) -> bool:
    # Clamp at zero; a decrement with nothing to release is a bookkeeping bug worth a warning.
    result = await session.execute(
        update(TenantApplicationLicense)
        .where(
            tenant_predicate(TenantApplicationLicense, tenant_id),
            TenantApplicationLicense.application_id == application_id,
            TenantApplicationLicense.seats_used > 0,
        )
        .values(seats_used=TenantApplicationLicense.seats_used - 1, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    decremented = result.rowcount == 1
    if not decremented:
        logger.warning(
            "seat_decrement_clamped tenant_id=%s application_id=%s",
            tenant_id,
            application_id,
        )
    if commit:
        await session.commit()
    return decremented


async def list_tenant_licenses(
    session: AsyncSession,
    tenant_id: str,
) -> list[tuple[TenantApplicationLicense, Application]]:
    stmt = (
        select(TenantApplicationLicense, Application)
        .join(Application, Application.id == TenantApplicationLicense.application_id)
        .where(tenant_predicate(TenantApplicationLicense, tenant_id))
        .order_by(Application.slug)
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def get_allowed_app_slugs(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
) -> list[str]:
    # Applications the tenant may use right now, independent of any user.
    stmt = (
        select(Application.slug)
        .join(TenantApplicationLicense, TenantApplicationLicense.application_id == Application.id)
        .where(
            tenant_predicate(TenantApplicationLicense, tenant_id),
            Application.is_active.is_(True),
            *_usable_clause(now or utc_now()),
        )
        .order_by(Application.slug)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _resolve_application(session: AsyncSession, application_slug: str) -> Application:
    application = await get_application_by_slug(session, application_slug)
    if application is None:
        raise ApplicationNotFound(
            f"Application '{application_slug}' not found",
            details={"application_slug": application_slug},
        )
    return application


def _validate_capacity(seat_capacity: int | None) -> None:
    if seat_capacity is not None and seat_capacity < 1:
        raise InvalidSeatCapacity(
            "Seat capacity must be at least 1 or null for unlimited",
            details={"seat_capacity": seat_capacity},
        )


async def activate_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_slug: str,
    seat_capacity: int | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> TenantApplicationLicense:
    # Create the license or reactivate the existing row; seat usage carries over.
    _validate_capacity(seat_capacity)
    resolved_now = now or utc_now()
    try:
        if await get_active_tenant(session, tenant_id) is None:
            raise TenantContextMissing(f"Tenant '{tenant_id}' not found", details={"tenant_id": tenant_id})
        application = await _resolve_application(session, application_slug)
        license_row = await get_license(
            session, tenant_id=tenant_id, application_id=application.id, for_update=True
        )
        if license_row is None:
            license_row = TenantApplicationLicense(
                tenant_id=tenant_id,
                application_id=application.id,
                status=LICENSE_ACTIVE,
                activated_at=resolved_now,
                expires_at=expires_at,
                seat_capacity=seat_capacity,
                seats_used=0,
            )
            session.add(license_row)
        else:
            if is_license_usable(license_row, now=resolved_now):
                raise DuplicateLicense(
                    f"License for '{application_slug}' is already active",
                    details={"application_slug": application_slug},
                )
            if seat_capacity is not None and seat_capacity < license_row.seats_used:
                raise InvalidSeatCapacity(
                    f"Seat capacity {seat_capacity} is below the {license_row.seats_used} seats in use",
                    details={"seat_capacity": seat_capacity, "seats_used": license_row.seats_used},
                )
            license_row.status = LICENSE_ACTIVE
            license_row.activated_at = resolved_now
            license_row.expires_at = expires_at
            license_row.seat_capacity = seat_capacity
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateLicense(
            f"License for '{application_slug}' is already active",
            details={"application_slug": application_slug},
        ) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while activating license") from exc
    logger.info(
        "license_activated tenant_id=%s application=%s seat_capacity=%s",
        tenant_id,
        application_slug,
        seat_capacity,
    )
    return license_row


async def _require_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_slug: str,
) -> TenantApplicationLicense:
    application = await _resolve_application(session, application_slug)
    license_row = await get_license(
        session, tenant_id=tenant_id, application_id=application.id, for_update=True
    )
    if license_row is None:
        raise LicenseNotFound(
            f"No license for '{application_slug}'",
            details={"application_slug": application_slug},
        )
    return license_row


async def suspend_license(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_slug: str,
) -> TenantApplicationLicense:
    # Suspension blocks every user at once; grants and seats are left untouched.
    try:
        license_row = await _require_license(
            session, tenant_id=tenant_id, application_slug=application_slug
        )
        license_row.status = LICENSE_SUSPENDED
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while suspending license") from exc
    logger.info("license_suspended tenant_id=%s application=%s", tenant_id, application_slug)
    return license_row


async def adjust_seat_capacity(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_slug: str,
    seat_capacity: int | None,
) -> TenantApplicationLicense:
    _validate_capacity(seat_capacity)
    try:
        license_row = await _require_license(
            session, tenant_id=tenant_id, application_slug=application_slug
        )
        stmt = (
            update(TenantApplicationLicense)
            .where(TenantApplicationLicense.id == license_row.id)
            .values(seat_capacity=seat_capacity, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if seat_capacity is not None:
            # Shrinking below current usage would strand active grants.
            stmt = stmt.where(TenantApplicationLicense.seats_used <= seat_capacity)
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            await session.refresh(license_row)
            raise InvalidSeatCapacity(
                f"Seat capacity {seat_capacity} is below the {license_row.seats_used} seats in use",
                details={"seat_capacity": seat_capacity, "seats_used": license_row.seats_used},
            )
        await session.commit()
        await session.refresh(license_row)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while adjusting seat capacity") from exc
    logger.info(
        "license_seats_adjusted tenant_id=%s application=%s seat_capacity=%s",
        tenant_id,
        application_slug,
        seat_capacity,
    )
    return license_row


async def expire_licenses(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> list[tuple[str, str]]:
    # Sweep active licenses past their expiry; returns (tenant_id, application_id) pairs.
    resolved_now = now or utc_now()
    try:
        result = await session.execute(
            select(TenantApplicationLicense)
            .where(
                TenantApplicationLicense.status == LICENSE_ACTIVE,
                TenantApplicationLicense.expires_at.is_not(None),
                TenantApplicationLicense.expires_at <= resolved_now,
            )
            .with_for_update()
        )
        expired = list(result.scalars().all())
        for license_row in expired:
            license_row.status = LICENSE_EXPIRED
        if commit:
            await session.commit()
        else:
            await session.flush()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while expiring licenses") from exc
    if expired:
        logger.info("licenses_expired count=%s", len(expired))
    return [(row.tenant_id, row.application_id) for row in expired]
