from app.db.base import Base  # noqa: F401
from app.models.coupon import (
    Coupon,
    CouponCustomerUsage,
    CouponDiscountType,
    CouponRedemptionAttempt,
    CouponRejectReason,
    CouponScope,
    Currency,
    OrderContext,
    RedemptionOutcome,
)  # noqa: F401
from app.models.fx import ExchangeRateSnapshot  # noqa: F401

__all__ = [
    "Base",
    "Coupon",
    "CouponCustomerUsage",
    "CouponDiscountType",
    "CouponRedemptionAttempt",
    "CouponRejectReason",
    "CouponScope",
    "Currency",
    "ExchangeRateSnapshot",
    "OrderContext",
    "RedemptionOutcome",
]
