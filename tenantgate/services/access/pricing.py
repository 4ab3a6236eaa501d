from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import as_utc, utc_now
from tenantgate.core.config import get_settings
from tenantgate.core.errors import DatabaseError, InvalidPrice, PricingWindowOverlap
from tenantgate.domain.models import Application, ApplicationPricing, UserApplicationGrant
from tenantgate.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PricingEntry:
    # Immutable view of one pricing row; grants copy from this, never reference it.
    id: str
    application_id: str
    user_type_id: str
    price: Decimal
    currency: str
    billing_cycle: str
    valid_from: datetime
    valid_to: datetime | None


@dataclass(frozen=True)
class BillingLine:
    application_id: str
    application_slug: str
    currency: str
    billing_cycle: str
    active_seats: int
    total: Decimal


def _to_entry(row: ApplicationPricing) -> PricingEntry:
    return PricingEntry(
        id=row.id,
        application_id=row.application_id,
        user_type_id=row.user_type_id,
        price=Decimal(str(row.price)).quantize(_CENTS),
        currency=row.currency,
        billing_cycle=row.billing_cycle,
        valid_from=as_utc(row.valid_from),
        valid_to=as_utc(row.valid_to),
    )


def entry_metadata(entry: PricingEntry) -> dict[str, Any]:
    # Serialize a pricing entry for audit metadata.
    return {
        "pricing_id": entry.id,
        "application_id": entry.application_id,
        "user_type_id": entry.user_type_id,
        "price": str(entry.price),
        "currency": entry.currency,
        "billing_cycle": entry.billing_cycle,
        "valid_from": entry.valid_from.isoformat(),
        "valid_to": entry.valid_to.isoformat() if entry.valid_to else None,
    }


async def get_current_price(
    session: AsyncSession,
    *,
    application_id: str,
    user_type_id: str,
    at: datetime | None = None,
) -> PricingEntry | None:
    # The entry whose [valid_from, valid_to) window contains the instant.
    instant = at or utc_now()
    result = await session.execute(
        select(ApplicationPricing)
        .where(
            ApplicationPricing.application_id == application_id,
            ApplicationPricing.user_type_id == user_type_id,
            ApplicationPricing.valid_from <= instant,
            or_(ApplicationPricing.valid_to.is_(None), ApplicationPricing.valid_to > instant),
        )
        .order_by(ApplicationPricing.valid_from.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return _to_entry(row)


async def list_pricing(
    session: AsyncSession,
    *,
    application_id: str,
    user_type_id: str | None = None,
) -> list[PricingEntry]:
    # Full history, newest window first.
    stmt = select(ApplicationPricing).where(ApplicationPricing.application_id == application_id)
    if user_type_id:
        stmt = stmt.where(ApplicationPricing.user_type_id == user_type_id)
    stmt = stmt.order_by(ApplicationPricing.user_type_id, ApplicationPricing.valid_from.desc())
    result = await session.execute(stmt)
    return [_to_entry(row) for row in result.scalars().all()]


def _normalize_price(price: Decimal | int | float | str) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidPrice(f"Price '{price}' is not a number", details={"price": str(price)}) from exc
    if not value.is_finite():
        raise InvalidPrice(f"Price '{price}' is not a number", details={"price": str(price)})
    if value < 0:
        raise InvalidPrice("Price cannot be negative", details={"price": str(value)})
    return value.quantize(_CENTS)


async def schedule_price(
    session: AsyncSession,
    *,
    application_id: str,
    user_type_id: str,
    price: Decimal | int | float | str,
    valid_from: datetime,
    valid_to: datetime | None = None,
    currency: str | None = None,
    billing_cycle: str = "monthly",
    supersede: bool = False,
    created_by: str | None = None,
) -> PricingEntry:
    """Add a pricing window for an (application, user type) pair.

    Windows for one pair never overlap. With ``supersede`` an open-ended
    window that started earlier is closed at ``valid_from`` instead of
    rejecting the new entry; any other overlap still fails.
    """
    settings = get_settings()
    amount = _normalize_price(price)
    resolved_currency = (currency or settings.default_currency).strip().upper()
    if len(resolved_currency) != 3:
        raise InvalidPrice(
            f"Currency '{resolved_currency}' is not a 3-letter code",
            details={"currency": resolved_currency},
        )
    cycle = billing_cycle.strip().lower()
    if cycle not in settings.billing_cycles:
        raise InvalidPrice(
            f"Billing cycle must be one of {', '.join(settings.billing_cycles)}",
            details={"billing_cycle": billing_cycle},
        )
    start = as_utc(valid_from)
    end = as_utc(valid_to)
    if end is not None and end <= start:
        raise InvalidPrice("valid_to must be after valid_from", details={"valid_from": start.isoformat()})

    try:
        overlap_clauses = [
            ApplicationPricing.application_id == application_id,
            ApplicationPricing.user_type_id == user_type_id,
            or_(ApplicationPricing.valid_to.is_(None), ApplicationPricing.valid_to > start),
        ]
        if end is not None:
            overlap_clauses.append(ApplicationPricing.valid_from < end)
        result = await session.execute(
            select(ApplicationPricing).where(and_(*overlap_clauses)).with_for_update()
        )
        overlapping = list(result.scalars().all())
        for existing in overlapping:
            existing_start = as_utc(existing.valid_from)
            if supersede and existing.valid_to is None and existing_start < start:
                # Close the running window exactly where the new one begins.
                existing.valid_to = start
                continue
            raise PricingWindowOverlap(
                "Pricing window overlaps an existing entry",
                details={
                    "existing_pricing_id": existing.id,
                    "existing_valid_from": existing_start.isoformat(),
                },
            )
        row = ApplicationPricing(
            application_id=application_id,
            user_type_id=user_type_id,
            price=amount,
            currency=resolved_currency,
            billing_cycle=cycle,
            valid_from=start,
            valid_to=end,
            created_by=created_by,
        )
        session.add(row)
        await session.commit()
    except PricingWindowOverlap:
        await session.rollback()
        raise
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("Database error while scheduling price") from exc
    logger.info(
        "price_scheduled application_id=%s user_type_id=%s price=%s currency=%s",
        application_id,
        user_type_id,
        amount,
        resolved_currency,
    )
    return _to_entry(row)


async def get_billing_summary(session: AsyncSession, *, tenant_id: str) -> list[BillingLine]:
    # Bill from the frozen grant snapshots, never from the current price table.
    stmt = (
        select(
            Application.id,
            Application.slug,
            UserApplicationGrant.currency_snapshot,
            UserApplicationGrant.billing_cycle_snapshot,
            func.count(UserApplicationGrant.id),
            func.sum(UserApplicationGrant.price_snapshot),
        )
        .join(Application, Application.id == UserApplicationGrant.application_id)
        .where(
            tenant_predicate(UserApplicationGrant, tenant_id),
            UserApplicationGrant.is_active.is_(True),
        )
        .group_by(
            Application.id,
            Application.slug,
            UserApplicationGrant.currency_snapshot,
            UserApplicationGrant.billing_cycle_snapshot,
        )
        .order_by(Application.slug, UserApplicationGrant.billing_cycle_snapshot)
    )
    result = await session.execute(stmt)
    return [
        BillingLine(
            application_id=app_id,
            application_slug=slug,
            currency=currency,
            billing_cycle=cycle,
            active_seats=int(count),
            total=Decimal(str(total or 0)).quantize(_CENTS),
        )
        for app_id, slug, currency, cycle, count, total in result.all()
    ]
