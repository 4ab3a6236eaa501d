from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import get_db, record_admin_event, require_platform_admin
from tenantgate.core.clock import utc_now
from tenantgate.core.errors import ApplicationNotFound
from tenantgate.persistence.repos.directory import get_application_by_slug
from tenantgate.services.access import pricing
from tenantgate.services.access.pricing import PricingEntry
from tenantgate.services.auth.tokens import Principal


router = APIRouter(prefix="/admin/applications/{slug}", tags=["pricing"])


class SchedulePriceRequest(BaseModel):
    user_type_id: str = Field(min_length=1, max_length=64)
    # Decimal keeps cents exact; negative values are rejected by the service.
    price: Decimal
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_cycle: str = "monthly"
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    supersede: bool = False


class PricingResponse(BaseModel):
    id: str
    application_id: str
    user_type_id: str
    price: str
    currency: str
    billing_cycle: str
    valid_from: str
    valid_to: str | None


class PricingList(BaseModel):
    items: list[PricingResponse]


def _to_response(entry: PricingEntry) -> PricingResponse:
    return PricingResponse(
        id=entry.id,
        application_id=entry.application_id,
        user_type_id=entry.user_type_id,
        price=f"{entry.price:.2f}",
        currency=entry.currency,
        billing_cycle=entry.billing_cycle,
        valid_from=entry.valid_from.isoformat(),
        valid_to=entry.valid_to.isoformat() if entry.valid_to else None,
    )


async def _application_id(db: AsyncSession, slug: str) -> str:
    application = await get_application_by_slug(db, slug, include_inactive=True)
    if application is None:
        raise ApplicationNotFound(f"Application '{slug}' not found", details={"application_slug": slug})
    return application.id


@router.get("/pricing")
async def list_pricing(
    slug: str,
    user_type_id: str | None = Query(default=None),
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> PricingList:
    application_id = await _application_id(db, slug)
    entries = await pricing.list_pricing(db, application_id=application_id, user_type_id=user_type_id)
    return PricingList(items=[_to_response(entry) for entry in entries])


@router.post("/pricing", status_code=201)
async def schedule_price(
    slug: str,
    payload: SchedulePriceRequest,
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> PricingResponse:
    application_id = await _application_id(db, slug)
    entry = await pricing.schedule_price(
        db,
        application_id=application_id,
        user_type_id=payload.user_type_id,
        price=payload.price,
        valid_from=payload.valid_from or utc_now(),
        valid_to=payload.valid_to,
        currency=payload.currency,
        billing_cycle=payload.billing_cycle,
        supersede=payload.supersede,
        created_by=principal.user_id,
    )
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=None,
        event_type="pricing.scheduled",
        resource_type="application_pricing",
        resource_id=entry.id,
        metadata=pricing.entry_metadata(entry),
    )
    return _to_response(entry)
