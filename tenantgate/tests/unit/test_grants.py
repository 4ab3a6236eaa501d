from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from tenantgate.core.clock import utc_now
from tenantgate.core.errors import (
    DuplicateGrant,
    GrantNotFound,
    InvalidRole,
    NoTenantLicense,
    PricingNotConfigured,
    SeatLimitExceeded,
    UserNotFound,
)
from tenantgate.domain.models import ApplicationPricing, UserApplicationGrant
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.access import grants, pricing
from tenantgate.services.access.grants import GrantRequest, SYSTEM_EXPIRY_ACTOR
from tenantgate.tests.utils.seed import (
    get_license_row,
    seed_application,
    seed_license,
    seed_pricing,
    seed_scenario,
    seed_tenant,
    seed_user,
    seed_user_type,
)


async def _grant(scenario, user_id: str, **overrides) -> grants.GrantOutcome:
    request = GrantRequest(
        tenant_id=overrides.pop("tenant_id", scenario.tenant_id),
        user_id=user_id,
        application_slug=overrides.pop("application_slug", scenario.application.slug),
        granted_by=scenario.admin.id,
        **overrides,
    )
    async with SessionLocal() as session:
        return await grants.grant_access(session, request)


async def _grant_rows(user_id: str) -> list[UserApplicationGrant]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(UserApplicationGrant)
            .where(UserApplicationGrant.user_id == user_id)
            .order_by(UserApplicationGrant.granted_at)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_grant_snapshots_price_and_consumes_seat() -> None:
    scenario = await seed_scenario(seat_capacity=5, price="35.00")
    outcome = await _grant(scenario, scenario.user.id)

    grant = outcome.grant
    assert grant.is_active
    assert grant.price_snapshot == Decimal("35.00")
    assert grant.currency_snapshot == "BRL"
    assert grant.billing_cycle_snapshot == "monthly"
    assert grant.user_type_id_snapshot == scenario.user_type_id
    assert grant.role_in_app == "operations"
    assert grant.granted_by == scenario.admin.id
    assert outcome.seats_used == 1
    assert outcome.seat_capacity == 5
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1


@pytest.mark.asyncio
async def test_grant_fails_when_seats_exhausted() -> None:
    scenario = await seed_scenario(seat_capacity=2)
    await _grant(scenario, scenario.admin.id)
    await _grant(scenario, scenario.user.id)
    third = await seed_user(tenant_id=scenario.tenant_id, user_type_id=scenario.user_type_id)

    with pytest.raises(SeatLimitExceeded) as exc_info:
        await _grant(scenario, third.id)
    assert "2/2" in exc_info.value.message
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 2
    assert await _grant_rows(third.id) == []


@pytest.mark.asyncio
async def test_grant_without_pricing_leaves_no_trace() -> None:
    scenario = await seed_scenario(price=None)
    with pytest.raises(PricingNotConfigured) as exc_info:
        await _grant(scenario, scenario.user.id)
    assert scenario.application.slug in exc_info.value.message
    assert scenario.user_type_id in exc_info.value.message
    assert await _grant_rows(scenario.user.id) == []
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 0


@pytest.mark.asyncio
async def test_grant_requires_user_type() -> None:
    scenario = await seed_scenario()
    untyped = await seed_user(tenant_id=scenario.tenant_id, user_type_id=None)
    with pytest.raises(PricingNotConfigured):
        await _grant(scenario, untyped.id)


@pytest.mark.asyncio
async def test_grant_requires_usable_license() -> None:
    tenant_id = await seed_tenant()
    user_type_id = await seed_user_type()
    application = await seed_application()
    await seed_license(
        tenant_id=tenant_id,
        application_id=application.id,
        expires_at=utc_now() - timedelta(hours=1),
    )
    user = await seed_user(tenant_id=tenant_id, user_type_id=user_type_id)
    async with SessionLocal() as session:
        with pytest.raises(NoTenantLicense):
            await grants.grant_access(
                session,
                GrantRequest(
                    tenant_id=tenant_id,
                    user_id=user.id,
                    application_slug=application.slug,
                    granted_by=None,
                ),
            )


@pytest.mark.asyncio
async def test_grant_rejects_user_from_another_tenant() -> None:
    scenario = await seed_scenario()
    other_tenant = await seed_tenant()
    outsider = await seed_user(tenant_id=other_tenant, user_type_id=scenario.user_type_id)
    with pytest.raises(UserNotFound):
        await _grant(scenario, outsider.id)


@pytest.mark.asyncio
async def test_grant_rejects_unknown_role() -> None:
    scenario = await seed_scenario()
    with pytest.raises(InvalidRole):
        await _grant(scenario, scenario.user.id, role_in_app="owner")


@pytest.mark.asyncio
async def test_duplicate_grant_is_rejected_without_extra_seat() -> None:
    scenario = await seed_scenario(seat_capacity=5)
    await _grant(scenario, scenario.user.id)
    with pytest.raises(DuplicateGrant):
        await _grant(scenario, scenario.user.id)
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1
    assert len(await _grant_rows(scenario.user.id)) == 1


@pytest.mark.asyncio
async def test_lapsed_grant_is_retired_on_regrant() -> None:
    scenario = await seed_scenario(seat_capacity=1)
    await _grant(scenario, scenario.user.id, expires_at=utc_now() + timedelta(seconds=1))
    async with SessionLocal() as session:
        stored = (await _grant_rows(scenario.user.id))[0]
        row = await session.get(UserApplicationGrant, stored.id)
        row.expires_at = utc_now() - timedelta(minutes=1)
        await session.commit()

    outcome = await _grant(scenario, scenario.user.id)
    assert outcome.seats_used == 1
    rows = await _grant_rows(scenario.user.id)
    assert [row.is_active for row in rows] == [False, True]
    assert rows[0].revoked_by == SYSTEM_EXPIRY_ACTOR


@pytest.mark.asyncio
async def test_revoke_releases_one_seat_even_when_repeated() -> None:
    scenario = await seed_scenario(seat_capacity=5)
    await _grant(scenario, scenario.admin.id)
    await _grant(scenario, scenario.user.id)

    async def _revoke() -> UserApplicationGrant:
        async with SessionLocal() as session:
            return await grants.revoke_access(
                session,
                tenant_id=scenario.tenant_id,
                user_id=scenario.user.id,
                application_slug=scenario.application.slug,
                revoked_by=scenario.admin.id,
            )

    first, second = await asyncio.gather(_revoke(), _revoke())
    assert not first.is_active and not second.is_active
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1
    # A third call after the fact is still a no-op.
    again = await _revoke()
    assert again.revoked_by == scenario.admin.id
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1


@pytest.mark.asyncio
async def test_revoke_without_grant_is_not_found() -> None:
    scenario = await seed_scenario()
    async with SessionLocal() as session:
        with pytest.raises(GrantNotFound):
            await grants.revoke_access(
                session,
                tenant_id=scenario.tenant_id,
                user_id=scenario.user.id,
                application_slug=scenario.application.slug,
                revoked_by=scenario.admin.id,
            )
        with pytest.raises(GrantNotFound):
            await grants.revoke_grant(
                session, tenant_id=scenario.tenant_id, grant_id="missing", revoked_by=None
            )


@pytest.mark.asyncio
async def test_price_changes_never_rewrite_existing_grants() -> None:
    scenario = await seed_scenario(price="35.00")
    outcome = await _grant(scenario, scenario.user.id)

    async with SessionLocal() as session:
        await pricing.schedule_price(
            session,
            application_id=scenario.application.id,
            user_type_id=scenario.user_type_id,
            price="50.00",
            valid_from=utc_now(),
            supersede=True,
        )
    async with SessionLocal() as session:
        # Editing the old pricing row in place must not leak into the snapshot either.
        old = await session.get(ApplicationPricing, outcome.grant.pricing_id_snapshot)
        old.price = Decimal("99.00")
        await session.commit()

    newcomer = await seed_user(tenant_id=scenario.tenant_id, user_type_id=scenario.user_type_id)
    new_outcome = await _grant(scenario, newcomer.id)

    async with SessionLocal() as session:
        stored = await session.get(UserApplicationGrant, outcome.grant.id)
        summary = await pricing.get_billing_summary(session, tenant_id=scenario.tenant_id)
    assert stored.price_snapshot == Decimal("35.00")
    assert new_outcome.grant.price_snapshot == Decimal("50.00")
    assert len(summary) == 1
    assert summary[0].active_seats == 2
    assert summary[0].total == Decimal("85.00")


@pytest.mark.asyncio
async def test_allowed_apps_follow_grants_and_licenses() -> None:
    scenario = await seed_scenario()
    await _grant(scenario, scenario.user.id)
    async with SessionLocal() as session:
        assert await grants.compute_allowed_apps(
            session, user_id=scenario.user.id, tenant_id=scenario.tenant_id
        ) == [scenario.application.slug]
        listed = await grants.list_user_grants(
            session, tenant_id=scenario.tenant_id, user_id=scenario.user.id
        )
    assert [application.slug for _grant_row, application in listed] == [scenario.application.slug]

    async with SessionLocal() as session:
        await grants.revoke_access(
            session,
            tenant_id=scenario.tenant_id,
            user_id=scenario.user.id,
            application_slug=scenario.application.slug,
            revoked_by=scenario.admin.id,
        )
        assert await grants.compute_allowed_apps(
            session, user_id=scenario.user.id, tenant_id=scenario.tenant_id
        ) == []
        history = await grants.list_user_grants(
            session, tenant_id=scenario.tenant_id, user_id=scenario.user.id, active_only=False
        )
    assert len(history) == 1


@pytest.mark.asyncio
async def test_billing_summary_keeps_cycles_apart() -> None:
    scenario = await seed_scenario(price="35.00")
    yearly_type = await seed_user_type()
    await seed_pricing(
        application_id=scenario.application.id,
        user_type_id=yearly_type,
        price="350.00",
        billing_cycle="yearly",
    )
    annual_user = await seed_user(tenant_id=scenario.tenant_id, user_type_id=yearly_type)
    await _grant(scenario, scenario.user.id)
    await _grant(scenario, annual_user.id)

    async with SessionLocal() as session:
        summary = await pricing.get_billing_summary(session, tenant_id=scenario.tenant_id)
    assert [(line.billing_cycle, line.currency, line.active_seats, line.total) for line in summary] == [
        ("monthly", "BRL", 1, Decimal("35.00")),
        ("yearly", "BRL", 1, Decimal("350.00")),
    ]


@pytest.mark.asyncio
async def test_concurrent_grants_for_last_seat_admit_one_user() -> None:
    scenario = await seed_scenario(seat_capacity=1)
    contenders = [
        await seed_user(tenant_id=scenario.tenant_id, user_type_id=scenario.user_type_id) for _ in range(3)
    ]

    async def _attempt(user_id: str) -> str:
        try:
            await _grant(scenario, user_id)
        except SeatLimitExceeded:
            return "full"
        return "ok"

    results = await asyncio.gather(*[_attempt(user.id) for user in contenders])
    assert sorted(results) == ["full", "full", "ok"]
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1
    active = [row for user in contenders for row in await _grant_rows(user.id) if row.is_active]
    assert len(active) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_grants_keep_one_active_row() -> None:
    scenario = await seed_scenario(seat_capacity=5)

    async def _attempt() -> str:
        try:
            await _grant(scenario, scenario.user.id)
        except DuplicateGrant:
            return "duplicate"
        return "ok"

    results = await asyncio.gather(_attempt(), _attempt())
    assert sorted(results) == ["duplicate", "ok"]
    rows = await _grant_rows(scenario.user.id)
    assert [row.is_active for row in rows] == [True]
    assert (await get_license_row(scenario.tenant_id, scenario.application.id)).seats_used == 1
