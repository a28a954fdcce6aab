from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.models.coupon import CouponDiscountType, CouponRejectReason, CouponScope, Currency, OrderContext
from app.services.coupon_validator import CouponOrder, CouponSnapshot, compute_discount, evaluate, per_user_rejection
from app.services.fx_rates import CurrencyConverter, RateSnapshot


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CONVERTER = CurrencyConverter(
    RateSnapshot(
        rates={Currency.USD: Decimal("1"), Currency.SAR: Decimal("3.75"), Currency.EGP: Decimal("50")},
        as_of=date(2026, 3, 1),
        source="test",
    )
)


def _coupon(**overrides) -> CouponSnapshot:
    base = CouponSnapshot(
        code="SAVE20",
        discount_type=CouponDiscountType.percentage,
        discount_value=Decimal("20"),
        currency=Currency.EGP,
    )
    return replace(base, **overrides)


def _order(amount: str = "1000", **overrides) -> CouponOrder:
    base = CouponOrder(
        amount=Decimal(amount),
        currency=Currency.EGP,
        context=OrderContext.checkout,
        customer_id="cust-1",
    )
    return replace(base, **overrides)


def test_percentage_coupon_is_capped_then_exhausted() -> None:
    coupon = _coupon(
        max_discount_amount=Decimal("50"),
        min_order_amount=Decimal("100"),
        usage_limit=1,
    )
    result = evaluate(coupon, _order("1000"), NOW, CONVERTER)
    assert result.valid is True
    assert result.discount_amount == Decimal("50.00")
    assert result.order_discount_amount == Decimal("50.00")

    exhausted = evaluate(replace(coupon, usage_count=1), _order("1000", customer_id="cust-2"), NOW, CONVERTER)
    assert exhausted.valid is False
    assert exhausted.reject_reason == CouponRejectReason.USAGE_LIMIT_REACHED


def test_fixed_coupon_is_clamped_to_order_value() -> None:
    coupon = _coupon(code="FLAT30", discount_type=CouponDiscountType.fixed, discount_value=Decimal("30"))
    result = evaluate(coupon, _order("20"), NOW, CONVERTER)
    assert result.valid is True
    assert result.discount_amount == Decimal("20.00")
    assert _order("20").amount - result.order_discount_amount == Decimal("0.00")


def test_expired_coupon_rejected_even_when_everything_else_passes() -> None:
    coupon = _coupon(expires_at=NOW - timedelta(days=1))
    result = evaluate(coupon, _order("1000"), NOW, CONVERTER)
    assert result.valid is False
    assert result.reject_reason == CouponRejectReason.EXPIRED
    assert result.discount_amount is None


@pytest.mark.parametrize(
    ("overrides", "order_overrides", "expected"),
    [
        ({"is_active": False, "starts_at": NOW + timedelta(days=1)}, {}, CouponRejectReason.INACTIVE),
        (
            {"starts_at": NOW + timedelta(days=1), "applies_to": CouponScope.package},
            {},
            CouponRejectReason.NOT_STARTED,
        ),
        (
            {"expires_at": NOW - timedelta(seconds=1), "applies_to": CouponScope.package},
            {},
            CouponRejectReason.EXPIRED,
        ),
        (
            {"applies_to": CouponScope.package, "usage_limit": 1, "usage_count": 1},
            {},
            CouponRejectReason.SCOPE_MISMATCH,
        ),
        (
            {"usage_limit": 2, "usage_count": 2, "per_user_limit": 1},
            {"prior_successful_redemptions": 1},
            CouponRejectReason.USAGE_LIMIT_REACHED,
        ),
        (
            {"per_user_limit": 1, "min_order_amount": Decimal("5000")},
            {"prior_successful_redemptions": 1},
            CouponRejectReason.PER_USER_LIMIT_REACHED,
        ),
        (
            {"per_user_limit": 3, "min_order_amount": Decimal("5000")},
            {"customer_id": None},
            CouponRejectReason.LOGIN_REQUIRED,
        ),
        ({"min_order_amount": Decimal("1000.01")}, {}, CouponRejectReason.MIN_ORDER_NOT_MET),
    ],
)
def test_first_failing_rule_decides_reason(overrides, order_overrides, expected) -> None:
    result = evaluate(_coupon(**overrides), _order("1000", **order_overrides), NOW, CONVERTER)
    assert result.valid is False
    assert result.reject_reason == expected


def test_window_bounds_are_inclusive() -> None:
    assert evaluate(_coupon(starts_at=NOW), _order(), NOW, CONVERTER).valid is True
    assert evaluate(_coupon(expires_at=NOW), _order(), NOW, CONVERTER).valid is True


def test_scope_all_accepts_both_contexts_and_exact_scope_matches() -> None:
    package_order = _order(context=OrderContext.package)
    assert evaluate(_coupon(), package_order, NOW, CONVERTER).valid is True
    assert evaluate(_coupon(applies_to=CouponScope.package), package_order, NOW, CONVERTER).valid is True
    mismatch = evaluate(_coupon(applies_to=CouponScope.checkout), package_order, NOW, CONVERTER)
    assert mismatch.reject_reason == CouponRejectReason.SCOPE_MISMATCH


def test_per_user_limit_allows_until_prior_reaches_cap() -> None:
    coupon = _coupon(per_user_limit=2)
    assert per_user_rejection(coupon, customer_id="cust-1", prior=1) is None
    assert per_user_rejection(coupon, customer_id="cust-1", prior=2) == CouponRejectReason.PER_USER_LIMIT_REACHED
    assert per_user_rejection(coupon, customer_id=None, prior=0) == CouponRejectReason.LOGIN_REQUIRED
    assert per_user_rejection(_coupon(), customer_id=None, prior=0) is None


def test_minimum_order_is_compared_in_coupon_currency() -> None:
    coupon = _coupon(currency=Currency.USD, min_order_amount=Decimal("10"))
    below = evaluate(coupon, _order("400"), NOW, CONVERTER)
    assert below.reject_reason == CouponRejectReason.MIN_ORDER_NOT_MET
    assert below.normalized_amount == Decimal("8.00")

    at_minimum = evaluate(coupon, _order("500"), NOW, CONVERTER)
    assert at_minimum.valid is True
    assert at_minimum.normalized_amount == Decimal("10.00")


def test_cross_currency_discount_is_reported_in_both_currencies() -> None:
    coupon = _coupon(currency=Currency.USD, discount_type=CouponDiscountType.fixed, discount_value=Decimal("10"))
    result = evaluate(coupon, _order("1000"), NOW, CONVERTER)
    assert result.normalized_amount == Decimal("20.00")
    assert result.discount_amount == Decimal("10.00")
    assert result.order_discount_amount == Decimal("500.00")


def test_order_discount_never_exceeds_order_amount_after_conversion() -> None:
    coupon = _coupon(currency=Currency.USD, discount_type=CouponDiscountType.fixed, discount_value=Decimal("10"))
    result = evaluate(coupon, _order("100"), NOW, CONVERTER)
    assert result.discount_amount == Decimal("2.00")
    assert result.order_discount_amount == Decimal("100.00")


def test_percentage_discount_rounds_half_up() -> None:
    assert compute_discount(_coupon(discount_value=Decimal("15")), Decimal("33.33")) == Decimal("5.00")
    assert compute_discount(_coupon(discount_value=Decimal("12.5")), Decimal("0.20")) == Decimal("0.03")
    assert compute_discount(_coupon(discount_value=Decimal("10")), Decimal("0.05")) == Decimal("0.01")


def test_discount_stays_within_zero_and_normalized_amount() -> None:
    coupons = [
        _coupon(discount_value=Decimal("100")),
        _coupon(discount_value=Decimal("0.01")),
        _coupon(discount_value=Decimal("35"), max_discount_amount=Decimal("7.50")),
        _coupon(discount_type=CouponDiscountType.fixed, discount_value=Decimal("999")),
        _coupon(discount_type=CouponDiscountType.fixed, discount_value=Decimal("0.01")),
    ]
    for coupon in coupons:
        for amount in ("0.01", "0.99", "1", "19.99", "250", "100000"):
            result = evaluate(coupon, _order(amount), NOW, CONVERTER)
            assert result.valid is True
            assert Decimal("0.00") <= result.discount_amount <= result.normalized_amount
            assert result.discount_amount == result.discount_amount.quantize(Decimal("0.01"))


def test_evaluation_is_deterministic() -> None:
    coupon = _coupon(max_discount_amount=Decimal("75"), per_user_limit=3)
    order = _order("987.65", prior_successful_redemptions=2)
    assert evaluate(coupon, order, NOW, CONVERTER) == evaluate(coupon, order, NOW, CONVERTER)


def test_naive_now_is_treated_as_utc() -> None:
    coupon = _coupon(expires_at=NOW)
    naive = NOW.replace(tzinfo=None) + timedelta(seconds=1)
    assert evaluate(coupon, _order(), naive, CONVERTER).reject_reason == CouponRejectReason.EXPIRED
