from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Final, Mapping
from uuid import UUID

from app.models.coupon import Currency
from app.services import pricing


SETTINGS_SOURCE: Final[str] = "settings"
BASE_CURRENCY: Final[str] = "USD"


class FxRateUnavailable(RuntimeError):
    """The active snapshot cannot convert between the requested currencies."""


@dataclass(frozen=True)
class RateSnapshot:
    rates: Mapping[Currency, Decimal]
    as_of: date
    source: str
    snapshot_id: UUID | None = None
    base: str = field(default=BASE_CURRENCY)

    def rate_for(self, currency: Currency) -> Decimal:
        rate = self.rates.get(Currency(currency))
        if rate is None or rate <= 0:
            raise FxRateUnavailable(f"No usable rate for {Currency(currency).value}")
        return rate

    def as_json(self) -> dict[str, str]:
        return {cur.value: str(rate) for cur, rate in sorted(self.rates.items(), key=lambda item: item[0].value)}


def parse_rates(raw: Mapping[str, object]) -> dict[Currency, Decimal]:
    """Parse a `{code: units-per-USD}` mapping, dropping unknown codes and non-positive rates."""
    parsed: dict[Currency, Decimal] = {}
    for key, value in (raw or {}).items():
        code = str(key or "").strip().upper()
        try:
            currency = Currency(code)
            rate = Decimal(str(value))
        except (ValueError, InvalidOperation):
            continue
        if not rate.is_finite() or rate <= 0:
            continue
        parsed[currency] = rate
    return parsed


class CurrencyConverter:
    """Converts money between supported currencies through one fixed rate snapshot."""

    def __init__(self, snapshot: RateSnapshot) -> None:
        self.snapshot = snapshot

    def convert(self, amount: Decimal, from_currency: Currency, to_currency: Currency) -> Decimal:
        if Currency(from_currency) == Currency(to_currency):
            return pricing.quantize_money(amount)
        from_rate = self.snapshot.rate_for(from_currency)
        to_rate = self.snapshot.rate_for(to_currency)
        return pricing.quantize_money(Decimal(amount) / from_rate * to_rate)
