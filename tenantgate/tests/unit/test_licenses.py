from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tenantgate.core.clock import utc_now
from tenantgate.core.errors import (
    ApplicationNotFound,
    DuplicateLicense,
    InvalidSeatCapacity,
    LicenseNotFound,
)
from tenantgate.domain.models import LICENSE_EXPIRED, LICENSE_SUSPENDED
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.access import licenses
from tenantgate.tests.utils.seed import (
    get_license_row,
    seed_application,
    seed_license,
    seed_tenant,
)


@pytest.mark.asyncio
async def test_check_license_ignores_missing_expired_and_suspended() -> None:
    tenant_id = await seed_tenant()
    active = await seed_application()
    expired = await seed_application()
    suspended = await seed_application()
    unlicensed = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=active.id)
    await seed_license(
        tenant_id=tenant_id,
        application_id=expired.id,
        expires_at=utc_now() - timedelta(minutes=1),
    )
    await seed_license(tenant_id=tenant_id, application_id=suspended.id, status=LICENSE_SUSPENDED)

    async with SessionLocal() as session:
        found = await licenses.check_license(session, tenant_id=tenant_id, application_slug=active.slug)
        assert found is not None
        for slug in (expired.slug, suspended.slug, unlicensed.slug):
            assert await licenses.check_license(session, tenant_id=tenant_id, application_slug=slug) is None
        assert await licenses.get_allowed_app_slugs(session, tenant_id) == [active.slug]


@pytest.mark.asyncio
async def test_license_is_scoped_to_its_tenant() -> None:
    tenant_id = await seed_tenant()
    other_tenant = await seed_tenant()
    application = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=application.id)
    async with SessionLocal() as session:
        assert (
            await licenses.check_license(session, tenant_id=other_tenant, application_slug=application.slug)
            is None
        )


@pytest.mark.asyncio
async def test_seat_availability_reports_capacity() -> None:
    tenant_id = await seed_tenant()
    limited = await seed_application()
    unlimited = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=limited.id, seat_capacity=3, seats_used=1)
    await seed_license(tenant_id=tenant_id, application_id=unlimited.id, seat_capacity=None, seats_used=40)
    async with SessionLocal() as session:
        seats = await licenses.check_seat_availability(
            session, tenant_id=tenant_id, application_id=limited.id
        )
        assert seats is not None
        assert (seats.capacity, seats.used, seats.available) == (3, 1, 2)
        assert (
            await licenses.check_seat_availability(session, tenant_id=tenant_id, application_id=unlimited.id)
            is None
        )


@pytest.mark.asyncio
async def test_concurrent_increments_never_exceed_capacity() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=application.id, seat_capacity=2)

    async def _attempt() -> bool:
        async with SessionLocal() as session:
            return await licenses.increment_seats(
                session, tenant_id=tenant_id, application_id=application.id
            )

    results = await asyncio.gather(*[_attempt() for _ in range(5)])
    assert results.count(True) == 2
    row = await get_license_row(tenant_id, application.id)
    assert row.seats_used == 2


@pytest.mark.asyncio
async def test_increment_is_unbounded_without_capacity() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=application.id, seat_capacity=None, seats_used=99)
    async with SessionLocal() as session:
        assert await licenses.increment_seats(session, tenant_id=tenant_id, application_id=application.id)
    assert (await get_license_row(tenant_id, application.id)).seats_used == 100


@pytest.mark.asyncio
async def test_decrement_clamps_at_zero() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=application.id, seat_capacity=2, seats_used=1)
    async with SessionLocal() as session:
        assert await licenses.decrement_seats(session, tenant_id=tenant_id, application_id=application.id)
        assert not await licenses.decrement_seats(session, tenant_id=tenant_id, application_id=application.id)
    assert (await get_license_row(tenant_id, application.id)).seats_used == 0


@pytest.mark.asyncio
async def test_activate_license_creates_then_rejects_duplicate() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    async with SessionLocal() as session:
        row = await licenses.activate_license(
            session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=10
        )
        assert row.seat_capacity == 10
        assert row.seats_used == 0
    async with SessionLocal() as session:
        with pytest.raises(DuplicateLicense):
            await licenses.activate_license(
                session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=10
            )


@pytest.mark.asyncio
async def test_activate_license_reactivates_suspended_row() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    await seed_license(
        tenant_id=tenant_id,
        application_id=application.id,
        seat_capacity=5,
        seats_used=3,
        status=LICENSE_SUSPENDED,
    )
    async with SessionLocal() as session:
        with pytest.raises(InvalidSeatCapacity):
            await licenses.activate_license(
                session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=2
            )
    async with SessionLocal() as session:
        row = await licenses.activate_license(
            session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=4
        )
    assert licenses.is_license_usable(row)
    assert row.seats_used == 3


@pytest.mark.asyncio
async def test_activate_license_validates_inputs() -> None:
    tenant_id = await seed_tenant()
    async with SessionLocal() as session:
        with pytest.raises(InvalidSeatCapacity):
            await licenses.activate_license(
                session, tenant_id=tenant_id, application_slug="anything", seat_capacity=0
            )
        with pytest.raises(ApplicationNotFound):
            await licenses.activate_license(session, tenant_id=tenant_id, application_slug="no-such-app")


@pytest.mark.asyncio
async def test_adjust_capacity_refuses_to_strand_seats() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    await seed_license(tenant_id=tenant_id, application_id=application.id, seat_capacity=5, seats_used=3)
    async with SessionLocal() as session:
        with pytest.raises(InvalidSeatCapacity):
            await licenses.adjust_seat_capacity(
                session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=2
            )
    async with SessionLocal() as session:
        row = await licenses.adjust_seat_capacity(
            session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=3
        )
    assert row.seat_capacity == 3
    async with SessionLocal() as session:
        row = await licenses.adjust_seat_capacity(
            session, tenant_id=tenant_id, application_slug=application.slug, seat_capacity=None
        )
    assert row.seat_capacity is None


@pytest.mark.asyncio
async def test_suspend_requires_existing_license() -> None:
    tenant_id = await seed_tenant()
    application = await seed_application()
    async with SessionLocal() as session:
        with pytest.raises(LicenseNotFound):
            await licenses.suspend_license(session, tenant_id=tenant_id, application_slug=application.slug)
    await seed_license(tenant_id=tenant_id, application_id=application.id)
    async with SessionLocal() as session:
        row = await licenses.suspend_license(session, tenant_id=tenant_id, application_slug=application.slug)
    assert row.status == LICENSE_SUSPENDED


@pytest.mark.asyncio
async def test_expire_licenses_marks_lapsed_rows() -> None:
    tenant_id = await seed_tenant()
    lapsed = await seed_application()
    current = await seed_application()
    await seed_license(
        tenant_id=tenant_id,
        application_id=lapsed.id,
        expires_at=utc_now() - timedelta(days=1),
    )
    await seed_license(
        tenant_id=tenant_id,
        application_id=current.id,
        expires_at=utc_now() + timedelta(days=1),
    )
    async with SessionLocal() as session:
        expired = await licenses.expire_licenses(session)
    assert (tenant_id, lapsed.id) in expired
    assert (tenant_id, current.id) not in expired
    assert (await get_license_row(tenant_id, lapsed.id)).status == LICENSE_EXPIRED
    assert (await get_license_row(tenant_id, current.id)).status == "active"
