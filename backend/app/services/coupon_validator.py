"""Pure coupon evaluation.

Nothing here touches the database or the clock: callers pass a coupon snapshot,
the order being priced, the instant to evaluate at and a converter bound to one
rate snapshot. The same inputs always produce the same evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from app.models.coupon import Coupon, CouponDiscountType, CouponRejectReason, CouponScope, Currency, OrderContext
from app.services import pricing
from app.services.clock import as_utc
from app.services.fx_rates import CurrencyConverter


@dataclass(frozen=True)
class CouponSnapshot:
    code: str
    discount_type: CouponDiscountType
    discount_value: Decimal
    currency: Currency
    applies_to: CouponScope = CouponScope.all
    min_order_amount: Decimal = Decimal("0.00")
    max_discount_amount: Decimal | None = None
    usage_limit: int | None = None
    per_user_limit: int | None = None
    usage_count: int = 0
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    description: str = ""

    @classmethod
    def from_model(cls, coupon: Coupon) -> "CouponSnapshot":
        return cls(
            code=coupon.code,
            discount_type=CouponDiscountType(coupon.discount_type),
            discount_value=pricing.to_decimal(coupon.discount_value),
            currency=Currency(coupon.currency),
            applies_to=CouponScope(coupon.applies_to),
            min_order_amount=pricing.to_decimal(coupon.min_order_amount),
            max_discount_amount=(
                pricing.to_decimal(coupon.max_discount_amount) if coupon.max_discount_amount is not None else None
            ),
            usage_limit=coupon.usage_limit,
            per_user_limit=coupon.per_user_limit,
            usage_count=int(coupon.usage_count or 0),
            starts_at=as_utc(coupon.starts_at) if coupon.starts_at else None,
            expires_at=as_utc(coupon.expires_at) if coupon.expires_at else None,
            is_active=bool(coupon.is_active),
            description=coupon.description or "",
        )

    def public_view(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "max_discount_amount": self.max_discount_amount,
            "min_order_amount": self.min_order_amount,
            "currency": self.currency,
            "applies_to": self.applies_to,
        }


@dataclass(frozen=True)
class CouponOrder:
    amount: Decimal
    currency: Currency
    context: OrderContext
    customer_id: str | None = None
    order_id: str | None = None
    prior_successful_redemptions: int = 0


@dataclass(frozen=True)
class CouponEvaluation:
    valid: bool
    reject_reason: CouponRejectReason | None = None
    # In the coupon's currency, as computed by the discount rules.
    discount_amount: Decimal | None = None
    # The same discount expressed in the order's currency, never above the order amount.
    order_discount_amount: Decimal | None = None
    normalized_amount: Decimal | None = None

    @classmethod
    def rejected(cls, reason: CouponRejectReason, *, normalized_amount: Decimal | None = None) -> "CouponEvaluation":
        return cls(valid=False, reject_reason=reason, normalized_amount=normalized_amount)


def _is_inactive(coupon: CouponSnapshot, order: CouponOrder, now: datetime) -> bool:
    return not coupon.is_active


def _not_started(coupon: CouponSnapshot, order: CouponOrder, now: datetime) -> bool:
    return coupon.starts_at is not None and now < coupon.starts_at


def _expired(coupon: CouponSnapshot, order: CouponOrder, now: datetime) -> bool:
    return coupon.expires_at is not None and now > coupon.expires_at


def _scope_mismatch(coupon: CouponSnapshot, order: CouponOrder, now: datetime) -> bool:
    if coupon.applies_to == CouponScope.all:
        return False
    return coupon.applies_to.value != OrderContext(order.context).value


def _usage_limit_reached(coupon: CouponSnapshot, order: CouponOrder, now: datetime) -> bool:
    return coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit


# Order matters: the first failing rule decides the reported reason.
_RULES: tuple[tuple[Callable[[CouponSnapshot, CouponOrder, datetime], bool], CouponRejectReason], ...] = (
    (_is_inactive, CouponRejectReason.INACTIVE),
    (_not_started, CouponRejectReason.NOT_STARTED),
    (_expired, CouponRejectReason.EXPIRED),
    (_scope_mismatch, CouponRejectReason.SCOPE_MISMATCH),
    (_usage_limit_reached, CouponRejectReason.USAGE_LIMIT_REACHED),
)


def per_user_rejection(coupon: CouponSnapshot, *, customer_id: str | None, prior: int) -> CouponRejectReason | None:
    if coupon.per_user_limit is None:
        return None
    if not customer_id:
        return CouponRejectReason.LOGIN_REQUIRED
    if prior >= coupon.per_user_limit:
        return CouponRejectReason.PER_USER_LIMIT_REACHED
    return None


def compute_discount(coupon: CouponSnapshot, normalized_amount: Decimal) -> Decimal:
    if normalized_amount <= 0:
        return pricing.ZERO
    if coupon.discount_type == CouponDiscountType.percentage:
        discount = normalized_amount * coupon.discount_value / Decimal("100")
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = min(coupon.discount_value, normalized_amount)
    discount = max(pricing.ZERO, min(discount, normalized_amount))
    return pricing.quantize_money(discount)


def evaluate(
    coupon: CouponSnapshot,
    order: CouponOrder,
    now: datetime,
    converter: CurrencyConverter,
) -> CouponEvaluation:
    now = as_utc(now)
    for failed, reason in _RULES:
        if failed(coupon, order, now):
            return CouponEvaluation.rejected(reason)

    per_user = per_user_rejection(
        coupon,
        customer_id=order.customer_id,
        prior=int(order.prior_successful_redemptions or 0),
    )
    if per_user is not None:
        return CouponEvaluation.rejected(per_user)

    normalized = converter.convert(order.amount, order.currency, coupon.currency)
    if normalized < coupon.min_order_amount:
        return CouponEvaluation.rejected(CouponRejectReason.MIN_ORDER_NOT_MET, normalized_amount=normalized)

    discount = compute_discount(coupon, normalized)
    order_amount = pricing.quantize_money(order.amount)
    order_discount = converter.convert(discount, coupon.currency, order.currency)
    order_discount = min(order_discount, order_amount)
    return CouponEvaluation(
        valid=True,
        discount_amount=discount,
        order_discount_amount=order_discount,
        normalized_amount=normalized,
    )
