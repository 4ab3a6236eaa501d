from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import get_db, record_admin_event, require_tenant_admin
from tenantgate.core.clock import as_utc
from tenantgate.domain.models import Application, UserApplicationGrant
from tenantgate.services.access import grants
from tenantgate.services.access.pricing import get_billing_summary
from tenantgate.services.auth.tokens import Principal


router = APIRouter(prefix="/admin/tenants/{tenant_id}", tags=["grants"])


class GrantAccessRequest(BaseModel):
    # Defaults to the user's tenant role when omitted.
    role_in_app: str | None = Field(default=None, max_length=32)
    expires_at: datetime | None = None


class GrantResponse(BaseModel):
    id: str
    user_id: str
    tenant_id: str
    application_id: str
    application_slug: str
    is_active: bool
    role_in_app: str
    granted_at: str
    granted_by: str | None
    revoked_at: str | None
    revoked_by: str | None
    expires_at: str | None
    price: str
    currency: str
    billing_cycle: str
    user_type_id: str | None


class GrantResult(BaseModel):
    grant: GrantResponse
    seats_used: int
    seat_capacity: int | None


class GrantList(BaseModel):
    items: list[GrantResponse]


class BillingLineResponse(BaseModel):
    application_id: str
    application_slug: str
    currency: str
    billing_cycle: str
    active_seats: int
    total: str


class BillingSummary(BaseModel):
    tenant_id: str
    items: list[BillingLineResponse]


def _iso(value: datetime | None) -> str | None:
    resolved = as_utc(value)
    return resolved.isoformat() if resolved else None


def _to_response(grant: UserApplicationGrant, application_slug: str) -> GrantResponse:
    return GrantResponse(
        id=grant.id,
        user_id=grant.user_id,
        tenant_id=grant.tenant_id,
        application_id=grant.application_id,
        application_slug=application_slug,
        is_active=grant.is_active,
        role_in_app=grant.role_in_app,
        granted_at=_iso(grant.granted_at) or "",
        granted_by=grant.granted_by,
        revoked_at=_iso(grant.revoked_at),
        revoked_by=grant.revoked_by,
        expires_at=_iso(grant.expires_at),
        price=f"{grant.price_snapshot:.2f}",
        currency=grant.currency_snapshot,
        billing_cycle=grant.billing_cycle_snapshot,
        user_type_id=grant.user_type_id_snapshot,
    )


@router.post("/users/{user_id}/applications/{slug}/grant", status_code=201)
async def grant_application_access(
    tenant_id: str,
    user_id: str,
    slug: str,
    payload: GrantAccessRequest,
    request: Request,
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> GrantResult:
    outcome = await grants.grant_access(
        db,
        grants.GrantRequest(
            tenant_id=tenant_id,
            user_id=user_id,
            application_slug=slug,
            granted_by=principal.user_id,
            role_in_app=payload.role_in_app,
            expires_at=payload.expires_at,
        ),
    )
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=tenant_id,
        event_type="grant.created",
        resource_type="user_application_grant",
        resource_id=outcome.grant.id,
        metadata={
            "user_id": user_id,
            "application_slug": slug,
            "role_in_app": outcome.grant.role_in_app,
            "price": str(outcome.grant.price_snapshot),
            "currency": outcome.grant.currency_snapshot,
        },
    )
    return GrantResult(
        grant=_to_response(outcome.grant, outcome.application.slug),
        seats_used=outcome.seats_used,
        seat_capacity=outcome.seat_capacity,
    )


@router.post("/users/{user_id}/applications/{slug}/revoke")
async def revoke_application_access(
    tenant_id: str,
    user_id: str,
    slug: str,
    request: Request,
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> GrantResponse:
    grant = await grants.revoke_access(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        application_slug=slug,
        revoked_by=principal.user_id,
    )
    await record_admin_event(
        request,
        db,
        principal,
        tenant_id=tenant_id,
        event_type="grant.revoked",
        resource_type="user_application_grant",
        resource_id=grant.id,
        metadata={"user_id": user_id, "application_slug": slug},
    )
    return _to_response(grant, slug)


@router.get("/users/{user_id}/applications")
async def list_user_applications(
    tenant_id: str,
    user_id: str,
    active_only: bool = Query(default=True),
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> GrantList:
    rows: list[tuple[UserApplicationGrant, Application]] = await grants.list_user_grants(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        active_only=active_only,
    )
    return GrantList(items=[_to_response(grant, application.slug) for grant, application in rows])


@router.get("/billing-summary")
async def billing_summary(
    tenant_id: str,
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> BillingSummary:
    lines = await get_billing_summary(db, tenant_id=tenant_id)
    return BillingSummary(
        tenant_id=tenant_id,
        items=[
            BillingLineResponse(
                application_id=line.application_id,
                application_slug=line.application_slug,
                currency=line.currency,
                billing_cycle=line.billing_cycle,
                active_seats=line.active_seats,
                total=f"{line.total:.2f}",
            )
            for line in lines
        ],
    )
