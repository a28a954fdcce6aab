from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: object) -> Decimal:
    """Coerce driver values (float sums on sqlite, None from empty aggregates) to Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def percent_of(part: Decimal | int, whole: Decimal | int) -> Decimal:
    """`part / whole * 100` rounded half-up to 2 places, 0.00 when `whole` is not positive."""
    whole_d = to_decimal(whole)
    if whole_d <= 0:
        return ZERO
    return quantize_money(to_decimal(part) * Decimal("100") / whole_d)


def ratio(total: Decimal, count: int) -> Decimal:
    if count <= 0:
        return ZERO
    return quantize_money(to_decimal(total) / Decimal(count))
