from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import (
    Base,
    Coupon,
    CouponDiscountType,
    CouponRedemptionAttempt,
    Currency,
    ExchangeRateSnapshot,
    OrderContext,
    RedemptionOutcome,
)


def _attempt(order_id: str, outcome: RedemptionOutcome) -> CouponRedemptionAttempt:
    return CouponRedemptionAttempt(
        coupon_code="SAVE20",
        customer_id="cust-1",
        order_id=order_id,
        context=OrderContext.checkout,
        order_amount=Decimal("100.00"),
        order_currency=Currency.EGP,
        discount_amount=Decimal("10.00"),
        reporting_currency=Currency.EGP,
        discount_amount_reporting=Decimal("10.00"),
        net_revenue_reporting=Decimal("90.00"),
        fx_source="settings",
        fx_rates={"EGP": "50", "SAR": "3.75", "USD": "1"},
        outcome=outcome,
        occurred_at=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
    )


@pytest.mark.anyio("asyncio")
async def test_coupon_and_fx_models_persist_in_sqlite_memory() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionLocal() as session:
        session.add(Coupon(code="SAVE20", discount_type=CouponDiscountType.percentage, discount_value=Decimal("20")))
        session.add(
            ExchangeRateSnapshot(rates={"USD": "1", "SAR": "3.75", "EGP": "50"}, as_of=date(2026, 3, 1), source="admin")
        )
        await session.commit()

        coupon = (await session.execute(select(Coupon).where(Coupon.code == "SAVE20"))).scalar_one()
        assert coupon.id is not None
        assert coupon.usage_count == 0
        assert coupon.currency == Currency.EGP
        assert coupon.is_active is True

        snapshot = (await session.execute(select(ExchangeRateSnapshot))).scalar_one()
        assert snapshot.base == "USD"
        assert snapshot.created_at is not None


@pytest.mark.anyio("asyncio")
async def test_only_one_success_row_per_order() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionLocal() as session:
        session.add(_attempt("ord-1", RedemptionOutcome.success))
        session.add(_attempt("ord-1", RedemptionOutcome.rejected))
        session.add(_attempt("ord-1", RedemptionOutcome.rejected))
        await session.commit()

        session.add(_attempt("ord-1", RedemptionOutcome.success))
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()
