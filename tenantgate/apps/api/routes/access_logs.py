from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import get_db, require_tenant_admin
from tenantgate.core.clock import as_utc
from tenantgate.domain.models import AccessDecisionLog
from tenantgate.persistence.repos import access_logs as access_logs_repo
from tenantgate.services.auth.tokens import Principal


router = APIRouter(prefix="/admin/tenants/{tenant_id}", tags=["access-logs"])


class AccessLogResponse(BaseModel):
    id: int
    occurred_at: str
    user_id: str | None
    tenant_id: str | None
    application_id: str | None
    application_slug: str | None
    decision: str
    reason_code: str | None
    access_source: str | None
    api_path: str | None
    http_method: str | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    metadata_json: dict[str, Any] | None


class AccessLogPage(BaseModel):
    items: list[AccessLogResponse]
    next_offset: int | None


def _to_response(entry: AccessDecisionLog) -> AccessLogResponse:
    occurred_at = as_utc(entry.occurred_at)
    return AccessLogResponse(
        id=entry.id,
        occurred_at=occurred_at.isoformat() if occurred_at else "",
        user_id=entry.user_id,
        tenant_id=entry.tenant_id,
        application_id=entry.application_id,
        application_slug=entry.application_slug,
        decision=entry.decision,
        reason_code=entry.reason_code,
        access_source=entry.access_source,
        api_path=entry.api_path,
        http_method=entry.http_method,
        request_id=entry.request_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        metadata_json=entry.metadata_json,
    )


@router.get("/access-logs")
async def list_access_logs(
    tenant_id: str,
    decision: str | None = Query(default=None, pattern="^(granted|denied)$"),
    user_id: str | None = None,
    application_id: str | None = None,
    reason_code: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> AccessLogPage:
    entries = await access_logs_repo.list_access_logs(
        db,
        tenant_id=tenant_id,
        decision=decision,
        user_id=user_id,
        application_id=application_id,
        reason_code=reason_code,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )
    # Fetch one extra row to know whether another page exists.
    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return AccessLogPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)


class ApplicationDecisionResponse(BaseModel):
    application_id: str | None
    application_slug: str | None
    total: int
    granted: int
    denied: int


class DenialReasonResponse(BaseModel):
    reason_code: str
    count: int
    affected_users: int


class AccessLogStats(BaseModel):
    total: int
    granted: int
    denied: int
    denial_rate: float
    unique_users: int
    unique_applications: int
    by_application: list[ApplicationDecisionResponse]
    top_denial_reasons: list[DenialReasonResponse]


@router.get("/access-logs/stats")
async def access_log_stats(
    tenant_id: str,
    application_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    top_reasons: int = Query(default=10, ge=1, le=50),
    principal: Principal = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
) -> AccessLogStats:
    totals = await access_logs_repo.decision_totals(
        db,
        tenant_id=tenant_id,
        application_id=application_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    by_application = await access_logs_repo.decisions_by_application(
        db, tenant_id=tenant_id, occurred_from=occurred_from, occurred_to=occurred_to
    )
    reasons = await access_logs_repo.top_denial_reasons(
        db,
        tenant_id=tenant_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        limit=top_reasons,
    )
    return AccessLogStats(
        total=totals.total,
        granted=totals.granted,
        denied=totals.denied,
        denial_rate=totals.denial_rate,
        unique_users=totals.unique_users,
        unique_applications=totals.unique_applications,
        by_application=[
            ApplicationDecisionResponse(
                application_id=row.application_id,
                application_slug=row.application_slug,
                total=row.total,
                granted=row.granted,
                denied=row.denied,
            )
            for row in by_application
        ],
        top_denial_reasons=[
            DenialReasonResponse(reason_code=row.reason_code, count=row.count, affected_users=row.affected_users)
            for row in reasons
        ],
    )
