from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Mapping

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.models.coupon import Currency
from app.models.fx import ExchangeRateSnapshot
from app.services import fx_rates
from app.services.fx_rates import RateSnapshot

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_snapshot(*, today: date | None = None) -> RateSnapshot:
    return RateSnapshot(
        rates=fx_rates.parse_rates(settings.fx_default_rates),
        as_of=today or _now().date(),
        source=fx_rates.SETTINGS_SOURCE,
    )


def _row_to_snapshot(row: ExchangeRateSnapshot) -> RateSnapshot:
    return RateSnapshot(
        rates=fx_rates.parse_rates(row.rates or {}),
        as_of=row.as_of,
        source=str(row.source),
        snapshot_id=row.id,
        base=str(row.base or fx_rates.BASE_CURRENCY),
    )


def _is_complete(snapshot: RateSnapshot) -> bool:
    return all(currency in snapshot.rates for currency in Currency)


async def get_rate_snapshot(session: AsyncSession) -> RateSnapshot:
    """Newest stored snapshot, or the configured defaults when none is stored or usable."""
    result = await session.execute(
        select(ExchangeRateSnapshot).order_by(ExchangeRateSnapshot.created_at.desc()).limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return default_snapshot()
    snapshot = _row_to_snapshot(row)
    if not _is_complete(snapshot):
        logger.warning("fx_snapshot_incomplete", extra={"snapshot_id": str(row.id), "rates": row.rates})
        return default_snapshot()
    return snapshot


async def save_rate_snapshot(
    session: AsyncSession,
    *,
    rates: Mapping[str, Decimal],
    as_of: date | None = None,
    source: str = "admin",
) -> RateSnapshot:
    parsed = fx_rates.parse_rates(rates)
    missing = [currency.value for currency in Currency if currency not in parsed]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing or non-positive rates for: {', '.join(missing)}",
        )
    row = ExchangeRateSnapshot(
        base=fx_rates.BASE_CURRENCY,
        rates={currency.value: str(rate) for currency, rate in parsed.items()},
        as_of=as_of or _now().date(),
        source=(source or "admin")[:32],
        created_at=_now(),
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info("fx_snapshot_saved", extra={"snapshot_id": str(row.id), "source": row.source})
    return _row_to_snapshot(row)
