from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import utc_now
from tenantgate.core.config import get_settings
from tenantgate.domain.models import AccessDecisionLog
from tenantgate.persistence.guards import tenant_predicate, tenant_select


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionTotals:
    total: int
    granted: int
    denied: int
    unique_users: int
    unique_applications: int

    @property
    def denial_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.denied * 100 / self.total, 2)


@dataclass(frozen=True)
class ApplicationDecisionCount:
    application_id: str | None
    application_slug: str | None
    total: int
    granted: int
    denied: int


@dataclass(frozen=True)
class DenialReasonCount:
    reason_code: str
    count: int
    affected_users: int


def _window(stmt, occurred_from: datetime | None, occurred_to: datetime | None):
    if occurred_from:
        stmt = stmt.where(AccessDecisionLog.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AccessDecisionLog.occurred_at <= occurred_to)
    return stmt


def _decision_sum(decision: str):
    return func.coalesce(func.sum(case((AccessDecisionLog.decision == decision, 1), else_=0)), 0)


async def list_access_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    decision: str | None = None,
    user_id: str | None = None,
    application_id: str | None = None,
    reason_code: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AccessDecisionLog]:
    # Scope every query to one tenant so admins never read another tenant's trail.
    stmt = tenant_select(AccessDecisionLog, tenant_id)
    if decision:
        stmt = stmt.where(AccessDecisionLog.decision == decision)
    if user_id:
        stmt = stmt.where(AccessDecisionLog.user_id == user_id)
    if application_id:
        stmt = stmt.where(AccessDecisionLog.application_id == application_id)
    if reason_code:
        stmt = stmt.where(AccessDecisionLog.reason_code == reason_code)
    stmt = _window(stmt, occurred_from, occurred_to)

    stmt = stmt.order_by(AccessDecisionLog.occurred_at.desc(), AccessDecisionLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def decision_totals(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
) -> DecisionTotals:
    stmt = select(
        func.count(AccessDecisionLog.id),
        _decision_sum("granted"),
        _decision_sum("denied"),
        func.count(func.distinct(AccessDecisionLog.user_id)),
        func.count(func.distinct(AccessDecisionLog.application_id)),
    ).where(tenant_predicate(AccessDecisionLog, tenant_id))
    if application_id:
        stmt = stmt.where(AccessDecisionLog.application_id == application_id)
    stmt = _window(stmt, occurred_from, occurred_to)
    total, granted, denied, users, applications = (await session.execute(stmt)).one()
    return DecisionTotals(
        total=int(total),
        granted=int(granted),
        denied=int(denied),
        unique_users=int(users),
        unique_applications=int(applications),
    )


async def decisions_by_application(
    session: AsyncSession,
    *,
    tenant_id: str,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
) -> list[ApplicationDecisionCount]:
    stmt = (
        select(
            AccessDecisionLog.application_id,
            AccessDecisionLog.application_slug,
            func.count(AccessDecisionLog.id),
            _decision_sum("granted"),
            _decision_sum("denied"),
        )
        .where(tenant_predicate(AccessDecisionLog, tenant_id))
        .group_by(AccessDecisionLog.application_id, AccessDecisionLog.application_slug)
    )
    stmt = _window(stmt, occurred_from, occurred_to)
    stmt = stmt.order_by(func.count(AccessDecisionLog.id).desc(), AccessDecisionLog.application_slug)
    result = await session.execute(stmt)
    return [
        ApplicationDecisionCount(
            application_id=app_id,
            application_slug=slug,
            total=int(total),
            granted=int(granted),
            denied=int(denied),
        )
        for app_id, slug, total, granted, denied in result.all()
    ]


async def top_denial_reasons(
    session: AsyncSession,
    *,
    tenant_id: str,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    limit: int = 10,
) -> list[DenialReasonCount]:
    stmt = (
        select(
            AccessDecisionLog.reason_code,
            func.count(AccessDecisionLog.id),
            func.count(func.distinct(AccessDecisionLog.user_id)),
        )
        .where(
            tenant_predicate(AccessDecisionLog, tenant_id),
            AccessDecisionLog.decision == "denied",
            AccessDecisionLog.reason_code.is_not(None),
        )
        .group_by(AccessDecisionLog.reason_code)
    )
    stmt = _window(stmt, occurred_from, occurred_to)
    stmt = stmt.order_by(func.count(AccessDecisionLog.id).desc(), AccessDecisionLog.reason_code).limit(limit)
    result = await session.execute(stmt)
    return [
        DenialReasonCount(reason_code=reason, count=int(count), affected_users=int(users))
        for reason, count, users in result.all()
    ]


async def prune_access_logs(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    # Remove decision rows older than the retention window; the caller owns the commit.
    days = retention_days if retention_days is not None else get_settings().access_log_retention_days
    cutoff = (now or utc_now()) - timedelta(days=days)
    result = await session.execute(delete(AccessDecisionLog).where(AccessDecisionLog.occurred_at < cutoff))
    deleted = result.rowcount or 0
    logger.info("access_logs_pruned retention_days=%s deleted=%s", days, deleted)
    return deleted
