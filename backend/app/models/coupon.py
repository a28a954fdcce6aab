import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CouponDiscountType(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class CouponScope(str, enum.Enum):
    all = "all"
    checkout = "checkout"
    package = "package"


class OrderContext(str, enum.Enum):
    checkout = "checkout"
    package = "package"


class Currency(str, enum.Enum):
    EGP = "EGP"
    SAR = "SAR"
    USD = "USD"


class RedemptionOutcome(str, enum.Enum):
    success = "success"
    rejected = "rejected"


class CouponRejectReason(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    PER_USER_LIMIT_REACHED = "PER_USER_LIMIT_REACHED"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("usage_limit IS NULL OR usage_count <= usage_limit", name="ck_coupons_usage_within_limit"),
        CheckConstraint("usage_count >= 0", name="ck_coupons_usage_non_negative"),
        Index("ix_coupons_active_scope", "is_active", "applies_to"),
        Index("ix_coupons_window", "starts_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    discount_type: Mapped[CouponDiscountType] = mapped_column(
        Enum(CouponDiscountType, native_enum=False),
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    min_order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[Currency] = mapped_column(Enum(Currency, native_enum=False), nullable=False, default=Currency.EGP)
    applies_to: Mapped[CouponScope] = mapped_column(
        Enum(CouponScope, native_enum=False),
        nullable=False,
        default=CouponScope.all,
    )
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    per_user_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CouponCustomerUsage(Base):
    __tablename__ = "coupon_customer_usages"
    __table_args__ = (UniqueConstraint("coupon_code", "customer_id", name="uq_coupon_customer_usages_code_customer"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_code: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class CouponRedemptionAttempt(Base):
    __tablename__ = "coupon_redemption_attempts"
    __table_args__ = (
        Index(
            "uq_coupon_redemption_attempts_order_success",
            "order_id",
            unique=True,
            sqlite_where=text("outcome = 'success'"),
            postgresql_where=text("outcome = 'success'"),
        ),
        Index("ix_coupon_redemption_attempts_occurred", "reporting_currency", "occurred_at"),
        Index("ix_coupon_redemption_attempts_code_customer", "coupon_code", "customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_code: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    context: Mapped[OrderContext] = mapped_column(Enum(OrderContext, native_enum=False), nullable=False)
    order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    order_currency: Mapped[Currency] = mapped_column(Enum(Currency, native_enum=False), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    coupon_currency: Mapped[Currency | None] = mapped_column(Enum(Currency, native_enum=False), nullable=True)
    coupon_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    reporting_currency: Mapped[Currency] = mapped_column(Enum(Currency, native_enum=False), nullable=False)
    discount_amount_reporting: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    net_revenue_reporting: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    fx_snapshot_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    fx_source: Mapped[str] = mapped_column(String(32), nullable=False)
    fx_rates: Mapped[dict] = mapped_column(JSON, nullable=False)
    fx_as_of: Mapped[date | None] = mapped_column(Date, nullable=True)
    outcome: Mapped[RedemptionOutcome] = mapped_column(Enum(RedemptionOutcome, native_enum=False), nullable=False)
    reject_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
