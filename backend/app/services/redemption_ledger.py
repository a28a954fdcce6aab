from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.coupon import CouponRedemptionAttempt, CouponRejectReason, Currency, OrderContext, RedemptionOutcome
from app.services import pricing
from app.services.clock import as_utc
from app.services.coupon_validator import CouponOrder
from app.services.fx_rates import CurrencyConverter


@dataclass(frozen=True)
class LedgerBucket:
    """Aggregated ledger rows sharing one coupon, context, outcome and UTC day."""

    code: str
    context: OrderContext
    outcome: RedemptionOutcome
    day: date
    attempts: int
    discount: Decimal
    net_revenue: Decimal


def build_attempt(
    *,
    coupon_code: str,
    order: CouponOrder,
    outcome: RedemptionOutcome,
    converter: CurrencyConverter,
    reporting_currency: Currency,
    occurred_at: datetime,
    order_discount: Decimal | None = None,
    reject_reason: CouponRejectReason | None = None,
) -> CouponRedemptionAttempt:
    """Build an immutable ledger row with its reporting amounts fixed at write time."""
    order_amount = pricing.quantize_money(order.amount)
    discount = pricing.quantize_money(order_discount) if order_discount is not None else pricing.ZERO
    if outcome == RedemptionOutcome.rejected:
        discount = pricing.ZERO
    gross_reporting = converter.convert(order_amount, order.currency, reporting_currency)
    discount_reporting = min(converter.convert(discount, order.currency, reporting_currency), gross_reporting)
    snapshot = converter.snapshot
    return CouponRedemptionAttempt(
        coupon_code=coupon_code,
        customer_id=order.customer_id,
        order_id=order.order_id,
        context=OrderContext(order.context),
        order_amount=order_amount,
        order_currency=Currency(order.currency),
        discount_amount=discount,
        reporting_currency=Currency(reporting_currency),
        discount_amount_reporting=discount_reporting,
        net_revenue_reporting=gross_reporting - discount_reporting,
        fx_snapshot_id=snapshot.snapshot_id,
        fx_source=snapshot.source,
        fx_rates=snapshot.as_json(),
        fx_as_of=snapshot.as_of,
        outcome=outcome,
        reject_reason=reject_reason.value if reject_reason is not None else None,
        occurred_at=as_utc(occurred_at),
    )


async def record(session: AsyncSession, attempt: CouponRedemptionAttempt) -> CouponRedemptionAttempt:
    # Flushed, not committed: the row shares the caller's transaction with the usage increments.
    session.add(attempt)
    await session.flush()
    return attempt


async def find_success_for_order(session: AsyncSession, *, order_id: str | None) -> CouponRedemptionAttempt | None:
    if not order_id:
        return None
    result = await session.execute(
        select(CouponRedemptionAttempt).where(
            CouponRedemptionAttempt.order_id == order_id,
            CouponRedemptionAttempt.outcome == RedemptionOutcome.success,
        )
    )
    return result.scalar_one_or_none()


async def list_for_coupon(session: AsyncSession, *, code: str) -> list[CouponRedemptionAttempt]:
    result = await session.execute(
        select(CouponRedemptionAttempt)
        .where(CouponRedemptionAttempt.coupon_code == code)
        .order_by(CouponRedemptionAttempt.occurred_at, CouponRedemptionAttempt.id)
    )
    return list(result.scalars().all())


def _utc_day(session: AsyncSession):
    column = CouponRedemptionAttempt.occurred_at
    dialect = getattr(getattr(session.get_bind(), "dialect", None), "name", "")
    if dialect == "postgresql":
        return func.date(func.timezone("UTC", column))
    # sqlite stores the UTC wall time as text.
    return func.date(column)


def _as_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


async def report_buckets(
    session: AsyncSession,
    *,
    currency: Currency,
    start: datetime,
    end: datetime,
) -> list[LedgerBucket]:
    day = _utc_day(session).label("day")
    rows = (
        await session.execute(
            select(
                CouponRedemptionAttempt.coupon_code,
                CouponRedemptionAttempt.context,
                CouponRedemptionAttempt.outcome,
                day,
                func.count(CouponRedemptionAttempt.id),
                func.coalesce(func.sum(CouponRedemptionAttempt.discount_amount_reporting), 0),
                func.coalesce(func.sum(CouponRedemptionAttempt.net_revenue_reporting), 0),
            )
            .where(
                CouponRedemptionAttempt.reporting_currency == Currency(currency),
                CouponRedemptionAttempt.occurred_at >= as_utc(start),
                CouponRedemptionAttempt.occurred_at <= as_utc(end),
            )
            .group_by(
                CouponRedemptionAttempt.coupon_code,
                CouponRedemptionAttempt.context,
                CouponRedemptionAttempt.outcome,
                day,
            )
        )
    ).all()
    return [
        LedgerBucket(
            code=str(code),
            context=OrderContext(context),
            outcome=RedemptionOutcome(outcome),
            day=_as_date(day_val),
            attempts=int(count or 0),
            discount=pricing.quantize_money(pricing.to_decimal(discount)),
            net_revenue=pricing.quantize_money(pricing.to_decimal(net)),
        )
        for code, context, outcome, day_val, count, discount, net in rows
    ]
