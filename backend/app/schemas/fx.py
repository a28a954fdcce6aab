from datetime import date
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class FxRatesRead(BaseModel):
    base: str = Field(min_length=3, max_length=3)
    # Units of each currency per 1 unit of `base`.
    rates: dict[str, Decimal]
    as_of: date
    source: str
    snapshot_id: UUID | None = None


class FxRatesUpdate(BaseModel):
    rates: dict[str, Decimal] = Field(min_length=1)
    as_of: date | None = None
    source: str = Field(default="admin", min_length=1, max_length=32)
