from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import get_db, record_admin_event, require_platform_admin, require_tenant_admin
from tenantgate.core.clock import as_utc
from tenantgate.domain.models import TenantApplicationLicense
from tenantgate.services.access import licenses
from tenantgate.services.auth.tokens import Principal


router = APIRouter(prefix="/admin/tenants/{tenant_id}", tags=["licenses"])


class LicenseResponse(BaseModel):
    id: str
    tenant_id: str
    application_id: str
    application_slug: str
    status: str
    usable: bool
    activated_at: str | None
    expires_at: str | None
    seat_capacity: int | None
    seats_used: int
    seats_available: int | None


class LicenseList(BaseModel):
    items: list[LicenseResponse]
    allowed_app_slugs: list[str]


class ActivateLicenseRequest(BaseModel):
    # Null capacity means unlimited seats.
    seat_capacity: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None


class SeatCapacityRequest(BaseModel):
    seat_capacity: int | None = Field(default=None, ge=1)


def _iso(value: datetime | None) -> str | None:
    resolved = as_utc(value)
    return resolved.isoformat() if resolved else None


def _to_response(license_row: TenantApplicationLicense, application_slug: str) -> LicenseResponse:
    seats = licenses.seat_info(license_row)
    return LicenseResponse(
        id=license_row.id,
        tenant_id=license_row.tenant_id,
        application_id=license_row.application_id,
        application_slug=application_slug,
        status=license_row.status,
        usable=licenses.is_license_usable(license_row),
        activated_at=_iso(license_row.activated_at),
        expires_at=_iso(license_row.expires_at),
        seat_capacity=license_row.seat_capacity,
        seats_used=license_row.seats_used,
        seats_available=seats.available if seats is not None else None,
    )


@router.get("/licenses")
async def list_licenses(
    tenant_id: str,
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> LicenseList:
    rows = await licenses.list_tenant_licenses(db, tenant_id)
    allowed = await licenses.get_allowed_app_slugs(db, tenant_id)
    return LicenseList(
        items=[_to_response(license_row, application.slug) for license_row, application in rows],
        allowed_app_slugs=allowed,
    )


@router.post("/applications/{slug}/activate", status_code=201)
async def activate_license(
    tenant_id: str,
    slug: str,
    payload: ActivateLicenseRequest,
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license_row = await licenses.activate_license(
        db,
        tenant_id=tenant_id,
        application_slug=slug,
        seat_capacity=payload.seat_capacity,
        expires_at=payload.expires_at,
    )
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=tenant_id,
        event_type="license.activated",
        resource_type="license",
        resource_id=license_row.id,
        metadata={"application_slug": slug, "seat_capacity": payload.seat_capacity},
    )
    return _to_response(license_row, slug)


@router.patch("/applications/{slug}/seats")
async def adjust_seats(
    tenant_id: str,
    slug: str,
    payload: SeatCapacityRequest,
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license_row = await licenses.adjust_seat_capacity(
        db,
        tenant_id=tenant_id,
        application_slug=slug,
        seat_capacity=payload.seat_capacity,
    )
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=tenant_id,
        event_type="license.seats_adjusted",
        resource_type="license",
        resource_id=license_row.id,
        metadata={"application_slug": slug, "seat_capacity": payload.seat_capacity},
    )
    return _to_response(license_row, slug)


@router.post("/applications/{slug}/suspend")
async def suspend_license(
    tenant_id: str,
    slug: str,
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license_row = await licenses.suspend_license(db, tenant_id=tenant_id, application_slug=slug)
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=tenant_id,
        event_type="license.suspended",
        resource_type="license",
        resource_id=license_row.id,
        metadata={"application_slug": slug},
    )
    return _to_response(license_row, slug)
