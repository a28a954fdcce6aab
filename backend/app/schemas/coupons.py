from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.coupon import CouponDiscountType, CouponRejectReason, CouponScope, Currency, OrderContext, RedemptionOutcome


def _upper_code(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip().upper()


def _utc_or_none(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str = ""
    discount_type: CouponDiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_order_amount: Decimal
    currency: Currency
    applies_to: CouponScope
    usage_limit: int | None = None
    per_user_limit: int | None = None
    usage_count: int
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    description: str = Field(default="", max_length=500)
    discount_type: CouponDiscountType
    discount_value: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    max_discount_amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    min_order_amount: Decimal = Field(default=Decimal("0.00"), ge=0, max_digits=12, decimal_places=2)
    currency: Currency = Currency.EGP
    applies_to: CouponScope = CouponScope.all
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=1)
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True

    _normalize_code = field_validator("code", mode="after")(_upper_code)
    _normalize_window = field_validator("starts_at", "expires_at", mode="after")(_utc_or_none)

    @field_validator("description", mode="after")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        return value.strip()


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=32)
    description: str | None = Field(default=None, max_length=500)
    discount_type: CouponDiscountType | None = None
    discount_value: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    max_discount_amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    min_order_amount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    currency: Currency | None = None
    applies_to: CouponScope | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=1)
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool | None = None

    _normalize_code = field_validator("code", mode="after")(_upper_code)
    _normalize_window = field_validator("starts_at", "expires_at", mode="after")(_utc_or_none)


class CouponOrderRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    currency: Currency = Currency.EGP
    context: OrderContext = OrderContext.checkout
    customer_id: str | None = Field(default=None, max_length=64)
    order_id: str | None = Field(default=None, max_length=64)


class CouponPublic(BaseModel):
    code: str
    description: str = ""
    discount_type: CouponDiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_order_amount: Decimal
    currency: Currency
    applies_to: CouponScope


class CouponValidationRead(BaseModel):
    valid: bool
    code: str
    currency: Currency
    context: OrderContext
    original_amount: Decimal
    # In the coupon currency.
    discount_amount: Decimal | None = None
    coupon_currency: Currency | None = None
    # In the order currency, never above the order amount.
    order_discount_amount: Decimal | None = None
    final_amount: Decimal | None = None
    reject_reason: CouponRejectReason | None = None
    coupon: CouponPublic | None = None


class CouponRedemptionRead(CouponValidationRead):
    committed: bool
    replayed: bool = False


class CouponRedemptionAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_code: str
    customer_id: str | None
    order_id: str | None
    context: OrderContext
    outcome: RedemptionOutcome
    reject_reason: str | None
    order_amount: Decimal
    order_currency: Currency
    discount_amount: Decimal
    reporting_currency: Currency
    discount_amount_reporting: Decimal
    net_revenue_reporting: Decimal
    fx_source: str
    fx_as_of: date | None
    occurred_at: datetime


class CouponReportPeriod(BaseModel):
    start_date: datetime
    end_date: datetime


class CouponReportOverview(BaseModel):
    total_coupons: int
    active_coupons: int
    inactive_coupons: int
    currently_valid_coupons: int
    scheduled_coupons: int
    expired_coupons: int
    expiring_soon_coupons: int
    used_coupons: int
    utilization_rate: Decimal
    total_redemptions: int
    rejected_attempts: int
    success_rate: Decimal
    total_discount_amount: Decimal
    total_net_revenue: Decimal
    total_gross_revenue: Decimal
    avg_discount_per_redemption: Decimal
    avg_order_value_after_discount: Decimal
    avg_discount_rate: Decimal


class CouponDailyTrendPoint(BaseModel):
    date: date
    uses: int
    total_discount: Decimal
    total_net_revenue: Decimal


class CouponContextBreakdown(BaseModel):
    context: OrderContext
    total_uses: int
    rejected_attempts: int
    success_rate: Decimal
    total_discount: Decimal
    total_net_revenue: Decimal


class CouponLeaderboardRow(BaseModel):
    code: str
    total_uses: int
    rejected_attempts: int
    success_rate: Decimal
    total_discount: Decimal
    total_net_revenue: Decimal
    avg_discount_per_use: Decimal
    usage_limit: int | None = None
    remaining_uses: int | None = None
    is_active: bool = False
    applies_to: CouponScope | None = None
    discount_type: CouponDiscountType | None = None
    discount_value: Decimal | None = None


class CouponReportRead(BaseModel):
    period: CouponReportPeriod
    currency: Currency
    overview: CouponReportOverview
    daily_trend: list[CouponDailyTrendPoint] = Field(default_factory=list)
    context_breakdown: list[CouponContextBreakdown] = Field(default_factory=list)
    top_coupons: list[CouponLeaderboardRow] = Field(default_factory=list)
