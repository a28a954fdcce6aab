from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.models.coupon import CouponRedemptionAttempt, CouponRejectReason, Currency, OrderContext, RedemptionOutcome
from app.schemas.coupons import CouponReportRead
from app.services import coupon_reports, coupon_store, fx_store, pricing, redemption_ledger
from app.services.clock import Clock, system_clock
from app.services.coupon_validator import CouponEvaluation, CouponOrder, CouponSnapshot, evaluate
from app.services.fx_rates import CurrencyConverter, FxRateUnavailable

logger = logging.getLogger(__name__)


class CouponServiceUnavailable(RuntimeError):
    """The store, the ledger or the rate source failed; no discount was granted."""


@dataclass(frozen=True)
class CouponValidationResult:
    code: str
    valid: bool
    currency: Currency
    context: OrderContext
    original_amount: Decimal
    reject_reason: CouponRejectReason | None = None
    discount_amount: Decimal | None = None
    coupon_currency: Currency | None = None
    order_discount_amount: Decimal | None = None
    coupon: CouponSnapshot | None = None

    @property
    def final_amount(self) -> Decimal | None:
        if self.order_discount_amount is None:
            return None
        return pricing.quantize_money(self.original_amount - self.order_discount_amount)


@dataclass(frozen=True)
class CouponRedemptionResult(CouponValidationResult):
    committed: bool = False
    replayed: bool = False


def _result_kwargs(
    code: str,
    order: CouponOrder,
    evaluation: CouponEvaluation,
    coupon: CouponSnapshot | None,
) -> dict[str, object]:
    return {
        "code": code,
        "valid": evaluation.valid,
        "currency": Currency(order.currency),
        "context": OrderContext(order.context),
        "original_amount": pricing.quantize_money(order.amount),
        "reject_reason": evaluation.reject_reason,
        "discount_amount": evaluation.discount_amount,
        "coupon_currency": coupon.currency if coupon else None,
        "order_discount_amount": evaluation.order_discount_amount,
        "coupon": coupon,
    }


def _replayed_result(row: CouponRedemptionAttempt, coupon: CouponSnapshot | None) -> CouponRedemptionResult:
    return CouponRedemptionResult(
        code=row.coupon_code,
        valid=True,
        currency=Currency(row.order_currency),
        context=OrderContext(row.context),
        original_amount=pricing.quantize_money(pricing.to_decimal(row.order_amount)),
        discount_amount=(
            pricing.quantize_money(pricing.to_decimal(row.coupon_discount_amount))
            if row.coupon_discount_amount is not None
            else None
        ),
        coupon_currency=Currency(row.coupon_currency) if row.coupon_currency else None,
        order_discount_amount=pricing.quantize_money(pricing.to_decimal(row.discount_amount)),
        coupon=coupon,
        committed=True,
        replayed=True,
    )


async def _current_converter(session: AsyncSession) -> CurrencyConverter:
    return CurrencyConverter(await fx_store.get_rate_snapshot(session))


async def validate_coupon(
    session: AsyncSession,
    code: str,
    order: CouponOrder,
    *,
    clock: Clock = system_clock,
) -> CouponValidationResult:
    """Evaluate a coupon against an order without reserving anything or writing to the ledger."""
    cleaned = coupon_store.normalize_code(code)
    try:
        coupon = await coupon_store.get(session, code=cleaned)
        if coupon is None:
            evaluation = CouponEvaluation.rejected(CouponRejectReason.NOT_FOUND)
        else:
            prior = await coupon_store.prior_successful_redemptions(
                session, code=cleaned, customer_id=order.customer_id
            )
            converter = await _current_converter(session)
            evaluation = evaluate(coupon, replace(order, prior_successful_redemptions=prior), clock.now(), converter)
    except (SQLAlchemyError, FxRateUnavailable) as exc:
        metrics.record_infrastructure_failure()
        logger.error("coupon_validate_failed", exc_info=True, extra={"coupon_code": cleaned})
        raise CouponServiceUnavailable("Coupon service is temporarily unavailable") from exc

    metrics.record_coupon_validated(valid=evaluation.valid)
    if not evaluation.valid:
        logger.info(
            "coupon_validate_rejected",
            extra={"coupon_code": cleaned, "reason": evaluation.reject_reason.value if evaluation.reject_reason else None},
        )
    return CouponValidationResult(**_result_kwargs(cleaned, order, evaluation, coupon))


async def _record_rejection(
    session: AsyncSession,
    *,
    code: str,
    order: CouponOrder,
    coupon: CouponSnapshot,
    reason: CouponRejectReason | None,
    converter: CurrencyConverter,
    now: datetime,
) -> CouponRedemptionResult:
    reason = reason or CouponRejectReason.USAGE_LIMIT_REACHED
    attempt = redemption_ledger.build_attempt(
        coupon_code=code,
        order=order,
        outcome=RedemptionOutcome.rejected,
        converter=converter,
        reporting_currency=Currency(settings.reporting_currency),
        occurred_at=now,
        reject_reason=reason,
    )
    await redemption_ledger.record(session, attempt)
    await session.commit()
    metrics.record_coupon_redeem_rejected(reason.value)
    logger.info(
        "coupon_redeem_rejected",
        extra={"coupon_code": code, "order_id": order.order_id, "outcome": "rejected", "reason": reason.value},
    )
    evaluation = CouponEvaluation.rejected(reason)
    return CouponRedemptionResult(**_result_kwargs(code, order, evaluation, coupon), committed=False)


async def _redeem(session: AsyncSession, code: str, order: CouponOrder, clock: Clock) -> CouponRedemptionResult:
    existing = await redemption_ledger.find_success_for_order(session, order_id=order.order_id)
    if existing is not None:
        metrics.record_idempotent_replay()
        logger.info("coupon_redeem_replayed", extra={"coupon_code": existing.coupon_code, "order_id": order.order_id})
        return _replayed_result(existing, await coupon_store.get(session, code=existing.coupon_code))

    rounds = 1 + max(0, int(settings.coupon_commit_retries))
    for round_no in range(rounds):
        coupon = await coupon_store.get(session, code=code)
        if coupon is None:
            # Unknown codes are not ledgered.
            await session.rollback()
            metrics.record_coupon_redeem_rejected(CouponRejectReason.NOT_FOUND.value)
            evaluation = CouponEvaluation.rejected(CouponRejectReason.NOT_FOUND)
            return CouponRedemptionResult(**_result_kwargs(code, order, evaluation, None), committed=False)

        prior = await coupon_store.prior_successful_redemptions(session, code=code, customer_id=order.customer_id)
        current = replace(order, prior_successful_redemptions=prior)
        converter = await _current_converter(session)
        now = clock.now()
        evaluation = evaluate(coupon, current, now, converter)
        if not evaluation.valid:
            return await _record_rejection(
                session,
                code=code,
                order=current,
                coupon=coupon,
                reason=evaluation.reject_reason,
                converter=converter,
                now=now,
            )

        commit = await coupon_store.try_commit_redemption(session, code=code, customer_id=order.customer_id)
        if not commit.committed:
            await session.rollback()
            metrics.record_commit_conflict()
            logger.info(
                "coupon_commit_conflict",
                extra={"coupon_code": code, "order_id": order.order_id, "reason": commit.reason, "round": round_no},
            )
            if round_no + 1 < rounds:
                continue
            if commit.reason == CouponRejectReason.NOT_FOUND:
                evaluation = CouponEvaluation.rejected(CouponRejectReason.NOT_FOUND)
                return CouponRedemptionResult(**_result_kwargs(code, order, evaluation, None), committed=False)
            return await _record_rejection(
                session,
                code=code,
                order=current,
                coupon=coupon,
                reason=commit.reason or CouponRejectReason.USAGE_LIMIT_REACHED,
                converter=converter,
                now=now,
            )

        attempt = redemption_ledger.build_attempt(
            coupon_code=code,
            order=current,
            outcome=RedemptionOutcome.success,
            converter=converter,
            reporting_currency=Currency(settings.reporting_currency),
            occurred_at=now,
            order_discount=evaluation.order_discount_amount,
        )
        attempt.coupon_currency = coupon.currency
        attempt.coupon_discount_amount = evaluation.discount_amount
        try:
            await redemption_ledger.record(session, attempt)
            await session.commit()
        except IntegrityError:
            # Another request already redeemed this order; its increments won, ours are rolled back.
            await session.rollback()
            winner = await redemption_ledger.find_success_for_order(session, order_id=order.order_id)
            if winner is None:
                raise
            metrics.record_idempotent_replay()
            logger.info("coupon_redeem_replayed", extra={"coupon_code": winner.coupon_code, "order_id": order.order_id})
            return _replayed_result(winner, await coupon_store.get(session, code=winner.coupon_code))

        metrics.record_coupon_redeemed()
        logger.info(
            "coupon_redeemed",
            extra={
                "coupon_code": code,
                "order_id": order.order_id,
                "outcome": "success",
                "discount_amount": evaluation.order_discount_amount,
            },
        )
        return CouponRedemptionResult(**_result_kwargs(code, current, evaluation, coupon), committed=True)


async def redeem_coupon(
    session: AsyncSession,
    code: str,
    order: CouponOrder,
    *,
    clock: Clock = system_clock,
) -> CouponRedemptionResult:
    """Evaluate and, when valid, atomically commit one use of the coupon.

    Every call for an existing coupon leaves exactly one ledger row in the same
    transaction as any usage increments. A conflict at commit time re-evaluates
    from fresh state up to `settings.coupon_commit_retries` more times.
    """
    cleaned = coupon_store.normalize_code(code)
    try:
        return await _redeem(session, cleaned, order, clock)
    except (SQLAlchemyError, FxRateUnavailable) as exc:
        await session.rollback()
        metrics.record_infrastructure_failure()
        logger.error(
            "coupon_redeem_failed",
            exc_info=True,
            extra={"coupon_code": cleaned, "order_id": order.order_id},
        )
        raise CouponServiceUnavailable("Coupon service is temporarily unavailable") from exc


async def get_coupon_report(
    session: AsyncSession,
    start_date: str | None = None,
    end_date: str | None = None,
    limit: int | None = None,
    *,
    clock: Clock = system_clock,
) -> CouponReportRead:
    try:
        return await coupon_reports.build_report(
            session, start_date=start_date, end_date=end_date, limit=limit, clock=clock
        )
    except SQLAlchemyError as exc:
        metrics.record_infrastructure_failure()
        logger.error("coupon_report_failed", exc_info=True)
        raise CouponServiceUnavailable("Coupon reporting is temporarily unavailable") from exc
