from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.coupon import Currency, OrderContext, RedemptionOutcome
from app.schemas.coupons import (
    CouponContextBreakdown,
    CouponDailyTrendPoint,
    CouponLeaderboardRow,
    CouponReportOverview,
    CouponReportPeriod,
    CouponReportRead,
)
from app.services import coupon_store, pricing, redemption_ledger
from app.services.clock import Clock, as_utc, system_clock
from app.services.coupon_validator import CouponSnapshot
from app.services.redemption_ledger import LedgerBucket

logger = logging.getLogger(__name__)


def _parse_report_date(value: str | None, *, end_of_day: bool, field_name: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {field_name}")


def parse_report_range(
    start_date: str | None,
    end_date: str | None,
    *,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Resolve the inclusive reporting window.

    A missing bound is derived from the given one: without a start the window
    covers the default number of days up to the end, and without an end it runs
    from the start until now (or just the start when that lies in the future).
    """
    now = as_utc(now)
    start = _parse_report_date(start_date, end_of_day=False, field_name="start_date")
    end = _parse_report_date(end_date, end_of_day=True, field_name="end_date")
    if end is None:
        end = now if start is None else max(now, start)
    if start is None:
        start = end - timedelta(days=int(settings.coupon_report_default_days))
    if start > end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date cannot be after end_date")
    return start, end


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return int(settings.coupon_report_default_limit)
    return max(1, min(int(limit), int(settings.coupon_report_max_limit)))


@dataclass
class _Tally:
    uses: int = 0
    rejected: int = 0
    discount: Decimal = field(default_factory=lambda: pricing.ZERO)
    net_revenue: Decimal = field(default_factory=lambda: pricing.ZERO)

    def add(self, bucket: LedgerBucket) -> None:
        if bucket.outcome == RedemptionOutcome.success:
            self.uses += bucket.attempts
            self.discount += bucket.discount
            self.net_revenue += bucket.net_revenue
        else:
            self.rejected += bucket.attempts

    @property
    def success_rate(self) -> Decimal:
        return pricing.percent_of(self.uses, self.uses + self.rejected)


def _coupon_state_counts(coupons: Sequence[CouponSnapshot], *, now: datetime) -> dict[str, int]:
    soon = now + timedelta(days=int(settings.coupon_expiring_soon_days))
    active = [c for c in coupons if c.is_active]
    return {
        "total_coupons": len(coupons),
        "active_coupons": len(active),
        "inactive_coupons": len(coupons) - len(active),
        "currently_valid_coupons": sum(
            1
            for c in active
            if (c.starts_at is None or c.starts_at <= now) and (c.expires_at is None or c.expires_at >= now)
        ),
        "scheduled_coupons": sum(1 for c in active if c.starts_at is not None and c.starts_at > now),
        "expired_coupons": sum(1 for c in coupons if c.expires_at is not None and c.expires_at < now),
        "expiring_soon_coupons": sum(
            1 for c in active if c.expires_at is not None and now <= c.expires_at <= soon
        ),
    }


def _leaderboard_row(code: str, tally: _Tally, coupon: CouponSnapshot | None) -> CouponLeaderboardRow:
    usage_limit = coupon.usage_limit if coupon else None
    remaining = max(usage_limit - coupon.usage_count, 0) if coupon and usage_limit is not None else None
    return CouponLeaderboardRow(
        code=code,
        total_uses=tally.uses,
        rejected_attempts=tally.rejected,
        success_rate=tally.success_rate,
        total_discount=pricing.quantize_money(tally.discount),
        total_net_revenue=pricing.quantize_money(tally.net_revenue),
        avg_discount_per_use=pricing.ratio(tally.discount, tally.uses),
        usage_limit=usage_limit,
        remaining_uses=remaining,
        is_active=bool(coupon.is_active) if coupon else False,
        applies_to=coupon.applies_to if coupon else None,
        discount_type=coupon.discount_type if coupon else None,
        discount_value=coupon.discount_value if coupon else None,
    )


def aggregate_report(
    buckets: Iterable[LedgerBucket],
    coupons: Sequence[CouponSnapshot],
    *,
    start: datetime,
    end: datetime,
    now: datetime,
    currency: Currency,
    limit: int,
) -> CouponReportRead:
    """Fold ledger buckets and the live coupon list into the report payload.

    Only success rows contribute money; rejected rows only count attempts. Daily
    trend entries exist only for days with at least one success.
    """
    now = as_utc(now)
    totals = _Tally()
    by_day: dict[date, _Tally] = defaultdict(_Tally)
    by_context: dict[OrderContext, _Tally] = defaultdict(_Tally)
    by_code: dict[str, _Tally] = defaultdict(_Tally)
    for bucket in buckets:
        totals.add(bucket)
        by_context[bucket.context].add(bucket)
        by_code[bucket.code].add(bucket)
        if bucket.outcome == RedemptionOutcome.success:
            by_day[bucket.day].add(bucket)

    live = {coupon.code: coupon for coupon in coupons}
    leaderboard = [_leaderboard_row(code, tally, live.get(code)) for code, tally in by_code.items()]
    leaderboard.sort(key=lambda row: (-row.total_uses, -row.total_net_revenue, row.code))

    gross = totals.discount + totals.net_revenue
    state = _coupon_state_counts(coupons, now=now)
    used = sum(1 for tally in by_code.values() if tally.uses > 0)
    overview = CouponReportOverview(
        **state,
        used_coupons=used,
        utilization_rate=pricing.percent_of(used, state["total_coupons"]),
        total_redemptions=totals.uses,
        rejected_attempts=totals.rejected,
        success_rate=totals.success_rate,
        total_discount_amount=pricing.quantize_money(totals.discount),
        total_net_revenue=pricing.quantize_money(totals.net_revenue),
        total_gross_revenue=pricing.quantize_money(gross),
        avg_discount_per_redemption=pricing.ratio(totals.discount, totals.uses),
        avg_order_value_after_discount=pricing.ratio(totals.net_revenue, totals.uses),
        avg_discount_rate=pricing.percent_of(totals.discount, gross),
    )
    return CouponReportRead(
        period=CouponReportPeriod(start_date=as_utc(start), end_date=as_utc(end)),
        currency=currency,
        overview=overview,
        daily_trend=[
            CouponDailyTrendPoint(
                date=day,
                uses=tally.uses,
                total_discount=pricing.quantize_money(tally.discount),
                total_net_revenue=pricing.quantize_money(tally.net_revenue),
            )
            for day, tally in sorted(by_day.items())
        ],
        context_breakdown=[
            CouponContextBreakdown(
                context=context,
                total_uses=tally.uses,
                rejected_attempts=tally.rejected,
                success_rate=tally.success_rate,
                total_discount=pricing.quantize_money(tally.discount),
                total_net_revenue=pricing.quantize_money(tally.net_revenue),
            )
            for context, tally in sorted(
                by_context.items(), key=lambda item: (-item[1].discount, item[0].value)
            )
        ],
        top_coupons=leaderboard[:limit],
    )


async def build_report(
    session: AsyncSession,
    *,
    start_date: str | None = None,
    end_date: str | None = None,
    limit: int | None = None,
    clock: Clock = system_clock,
) -> CouponReportRead:
    now = as_utc(clock.now())
    start, end = parse_report_range(start_date, end_date, now=now)
    top_limit = clamp_limit(limit)
    currency = Currency(settings.reporting_currency)
    buckets = await redemption_ledger.report_buckets(session, currency=currency, start=start, end=end)
    coupons = await coupon_store.list_all(session)
    report = aggregate_report(buckets, coupons, start=start, end=end, now=now, currency=currency, limit=top_limit)
    logger.info(
        "coupon_report_built",
        extra={
            "start": start.isoformat(),
            "end": end.isoformat(),
            "buckets": len(buckets),
            "total_redemptions": report.overview.total_redemptions,
        },
    )
    return report
