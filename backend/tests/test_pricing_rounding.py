from decimal import Decimal

from app.services import pricing


def test_quantize_money_rounds_half_up() -> None:
    assert pricing.quantize_money(Decimal("1.005")) == Decimal("1.01")
    assert pricing.quantize_money(Decimal("1.015")) == Decimal("1.02")
    assert pricing.quantize_money(Decimal("1.0049")) == Decimal("1.00")
    assert pricing.quantize_money(Decimal("2.345")) == Decimal("2.35")
    assert pricing.quantize_money(Decimal("-2.345")) == Decimal("-2.35")


def test_to_decimal_handles_driver_values() -> None:
    assert pricing.to_decimal(None) == Decimal("0.00")
    assert pricing.to_decimal(12.1) == Decimal("12.1")
    assert pricing.to_decimal(7) == Decimal("7")
    assert pricing.to_decimal("3.50") == Decimal("3.50")


def test_percent_of_rounds_and_guards_zero() -> None:
    assert pricing.percent_of(3, 5) == Decimal("60.00")
    assert pricing.percent_of(1, 3) == Decimal("33.33")
    assert pricing.percent_of(2, 3) == Decimal("66.67")
    assert pricing.percent_of(4, 0) == Decimal("0.00")


def test_ratio_guards_zero_count() -> None:
    assert pricing.ratio(Decimal("10"), 3) == Decimal("3.33")
    assert pricing.ratio(Decimal("10"), 0) == Decimal("0.00")
