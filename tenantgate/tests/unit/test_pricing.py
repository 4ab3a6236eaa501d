from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from tenantgate.core.clock import utc_now
from tenantgate.core.errors import InvalidPrice, PricingWindowOverlap
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.access import pricing
from tenantgate.tests.utils.seed import seed_application, seed_pricing, seed_user_type


@pytest.mark.asyncio
async def test_current_price_uses_half_open_window() -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    boundary = utc_now() - timedelta(days=1)
    await seed_pricing(
        application_id=application.id,
        user_type_id=user_type_id,
        price="30.00",
        valid_from=boundary - timedelta(days=30),
        valid_to=boundary,
    )
    await seed_pricing(
        application_id=application.id,
        user_type_id=user_type_id,
        price="35.00",
        valid_from=boundary,
    )
    async with SessionLocal() as session:
        at_boundary = await pricing.get_current_price(
            session, application_id=application.id, user_type_id=user_type_id, at=boundary
        )
        before = await pricing.get_current_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            at=boundary - timedelta(seconds=1),
        )
        too_early = await pricing.get_current_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            at=boundary - timedelta(days=60),
        )
    assert at_boundary is not None and at_boundary.price == Decimal("35.00")
    assert before is not None and before.price == Decimal("30.00")
    assert too_early is None


@pytest.mark.asyncio
async def test_price_lookup_is_per_user_type() -> None:
    application = await seed_application()
    physician = await seed_user_type("physician")
    nurse = await seed_user_type("nurse")
    await seed_pricing(application_id=application.id, user_type_id=physician, price="35.00")
    async with SessionLocal() as session:
        assert await pricing.get_current_price(
            session, application_id=application.id, user_type_id=physician
        )
        assert (
            await pricing.get_current_price(session, application_id=application.id, user_type_id=nurse)
            is None
        )


@pytest.mark.asyncio
async def test_schedule_price_rejects_overlap() -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    start = utc_now()
    async with SessionLocal() as session:
        await pricing.schedule_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            price="35.00",
            valid_from=start,
            valid_to=start + timedelta(days=30),
        )
    async with SessionLocal() as session:
        with pytest.raises(PricingWindowOverlap):
            await pricing.schedule_price(
                session,
                application_id=application.id,
                user_type_id=user_type_id,
                price="40.00",
                valid_from=start + timedelta(days=10),
            )
    async with SessionLocal() as session:
        # Adjacent windows share only the boundary instant, which is not an overlap.
        entry = await pricing.schedule_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            price="40.00",
            valid_from=start + timedelta(days=30),
        )
    assert entry.price == Decimal("40.00")
    assert entry.currency == "BRL"
    assert entry.billing_cycle == "monthly"


@pytest.mark.asyncio
async def test_supersede_closes_open_window() -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    start = utc_now() - timedelta(days=10)
    change_at = utc_now() + timedelta(days=5)
    async with SessionLocal() as session:
        await pricing.schedule_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            price="35.00",
            valid_from=start,
        )
    async with SessionLocal() as session:
        with pytest.raises(PricingWindowOverlap):
            await pricing.schedule_price(
                session,
                application_id=application.id,
                user_type_id=user_type_id,
                price="45.00",
                valid_from=change_at,
            )
    async with SessionLocal() as session:
        await pricing.schedule_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            price="45.00",
            valid_from=change_at,
            supersede=True,
        )
    async with SessionLocal() as session:
        history = await pricing.list_pricing(session, application_id=application.id)
        now_price = await pricing.get_current_price(
            session, application_id=application.id, user_type_id=user_type_id
        )
        later_price = await pricing.get_current_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            at=change_at + timedelta(days=1),
        )
    assert [entry.price for entry in history] == [Decimal("45.00"), Decimal("35.00")]
    assert history[1].valid_to == change_at
    assert now_price is not None and now_price.price == Decimal("35.00")
    assert later_price is not None and later_price.price == Decimal("45.00")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("price", "currency", "billing_cycle"),
    [
        ("-1", None, "monthly"),
        ("NaN", None, "monthly"),
        ("10", "REAL", "monthly"),
        ("10", None, "weekly"),
    ],
)
async def test_schedule_price_validates_inputs(price: str, currency: str | None, billing_cycle: str) -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    async with SessionLocal() as session:
        with pytest.raises(InvalidPrice):
            await pricing.schedule_price(
                session,
                application_id=application.id,
                user_type_id=user_type_id,
                price=price,
                valid_from=utc_now(),
                currency=currency,
                billing_cycle=billing_cycle,
            )


@pytest.mark.asyncio
async def test_schedule_price_requires_forward_window() -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    start = utc_now()
    async with SessionLocal() as session:
        with pytest.raises(InvalidPrice):
            await pricing.schedule_price(
                session,
                application_id=application.id,
                user_type_id=user_type_id,
                price="10",
                valid_from=start,
                valid_to=start,
            )


@pytest.mark.asyncio
async def test_zero_price_is_allowed() -> None:
    application = await seed_application()
    user_type_id = await seed_user_type()
    async with SessionLocal() as session:
        entry = await pricing.schedule_price(
            session,
            application_id=application.id,
            user_type_id=user_type_id,
            price=0,
            valid_from=utc_now(),
        )
    assert entry.price == Decimal("0.00")
