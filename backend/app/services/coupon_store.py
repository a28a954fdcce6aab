from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.coupon import Coupon, CouponCustomerUsage, CouponDiscountType, CouponRejectReason
from app.schemas.coupons import CouponCreate, CouponUpdate
from app.services.clock import as_utc
from app.services.coupon_validator import CouponSnapshot

logger = logging.getLogger(__name__)

_DETAIL_COUPON_NOT_FOUND = "Coupon not found"
# Fields an operator may clear with an explicit null.
_NULLABLE_FIELDS = frozenset({"max_discount_amount", "usage_limit", "per_user_limit", "starts_at", "expires_at"})


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class CommitResult:
    committed: bool
    reason: CouponRejectReason | None = None

    @classmethod
    def ok(cls) -> "CommitResult":
        return cls(committed=True)

    @classmethod
    def conflict(cls, reason: CouponRejectReason) -> "CommitResult":
        return cls(committed=False, reason=reason)


async def get_coupon_model(session: AsyncSession, *, code: str) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    # Re-read the row even when the session already holds it; decisions must see committed counters.
    result = await session.execute(
        select(Coupon).where(Coupon.code == cleaned).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get(session: AsyncSession, *, code: str) -> CouponSnapshot | None:
    coupon = await get_coupon_model(session, code=code)
    return CouponSnapshot.from_model(coupon) if coupon else None


async def list_all(session: AsyncSession) -> list[CouponSnapshot]:
    result = await session.execute(select(Coupon).order_by(Coupon.code).execution_options(populate_existing=True))
    return [CouponSnapshot.from_model(coupon) for coupon in result.scalars().all()]


async def prior_successful_redemptions(session: AsyncSession, *, code: str, customer_id: str | None) -> int:
    if not customer_id:
        return 0
    count = await session.scalar(
        select(CouponCustomerUsage.success_count).where(
            CouponCustomerUsage.coupon_code == normalize_code(code),
            CouponCustomerUsage.customer_id == customer_id,
        )
    )
    return int(count or 0)


async def _ensure_customer_usage_row(session: AsyncSession, *, code: str, customer_id: str) -> None:
    bind = session.get_bind()
    dialect = getattr(getattr(bind, "dialect", None), "name", "")
    insert_fn = pg_insert if dialect == "postgresql" else (sqlite_insert if dialect == "sqlite" else None)
    if insert_fn is not None:
        stmt = insert_fn(CouponCustomerUsage).values(coupon_code=code, customer_id=customer_id, success_count=0)
        stmt = stmt.on_conflict_do_nothing(index_elements=[CouponCustomerUsage.coupon_code, CouponCustomerUsage.customer_id])
        await session.execute(stmt)
        return

    existing = await session.scalar(
        select(CouponCustomerUsage.id).where(
            CouponCustomerUsage.coupon_code == code,
            CouponCustomerUsage.customer_id == customer_id,
        )
    )
    if existing is not None:
        return
    try:
        async with session.begin_nested():
            session.add(CouponCustomerUsage(coupon_code=code, customer_id=customer_id, success_count=0))
    except IntegrityError:
        # A concurrent first redemption by the same customer created the row.
        pass


async def try_commit_redemption(session: AsyncSession, *, code: str, customer_id: str | None) -> CommitResult:
    """Reserve one use of `code` for `customer_id` inside the caller's transaction.

    Limits are re-checked by the UPDATE statements themselves, so concurrent
    commits are ordered by the database and `usage_count` can never pass
    `usage_limit`. On a conflict the caller must roll back: a global increment
    may already have been applied when the per-customer cap rejects.
    """
    cleaned = normalize_code(code)
    bumped = await session.execute(
        update(Coupon)
        .where(
            Coupon.code == cleaned,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1, updated_at=Coupon.updated_at)
        .execution_options(synchronize_session=False)
    )
    if int(bumped.rowcount or 0) != 1:
        exists = await session.scalar(select(func.count()).select_from(Coupon).where(Coupon.code == cleaned))
        if not exists:
            return CommitResult.conflict(CouponRejectReason.NOT_FOUND)
        return CommitResult.conflict(CouponRejectReason.USAGE_LIMIT_REACHED)

    per_user_limit = await session.scalar(select(Coupon.per_user_limit).where(Coupon.code == cleaned))
    if not customer_id:
        if per_user_limit is not None:
            return CommitResult.conflict(CouponRejectReason.LOGIN_REQUIRED)
        return CommitResult.ok()

    await _ensure_customer_usage_row(session, code=cleaned, customer_id=customer_id)
    conditions = [CouponCustomerUsage.coupon_code == cleaned, CouponCustomerUsage.customer_id == customer_id]
    if per_user_limit is not None:
        conditions.append(CouponCustomerUsage.success_count < int(per_user_limit))
    per_user = await session.execute(
        update(CouponCustomerUsage)
        .where(*conditions)
        .values(success_count=CouponCustomerUsage.success_count + 1)
        .execution_options(synchronize_session=False)
    )
    if int(per_user.rowcount or 0) != 1:
        return CommitResult.conflict(CouponRejectReason.PER_USER_LIMIT_REACHED)
    return CommitResult.ok()


def _validate_rules(coupon: Coupon) -> None:
    value = Decimal(coupon.discount_value)
    if coupon.discount_type == CouponDiscountType.percentage and (value <= 0 or value > 100):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage discount must be between 0 and 100")
    if coupon.discount_type == CouponDiscountType.fixed and value <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Fixed discount must be greater than 0")
    if coupon.starts_at and coupon.expires_at and as_utc(coupon.expires_at) <= as_utc(coupon.starts_at):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon expiry must be after start date")
    if coupon.usage_limit is not None and int(coupon.usage_count or 0) > int(coupon.usage_limit):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Usage limit cannot be lower than the current usage count",
        )


async def _ensure_code_available(session: AsyncSession, *, code: str) -> None:
    taken = await session.scalar(select(func.count()).select_from(Coupon).where(Coupon.code == code))
    if int(taken or 0) > 0:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")


async def list_coupons(session: AsyncSession, *, is_active: bool | None = None, search: str | None = None) -> list[Coupon]:
    stmt = select(Coupon)
    if is_active is not None:
        stmt = stmt.where(Coupon.is_active.is_(is_active))
    needle = normalize_code(search)
    if needle:
        stmt = stmt.where(Coupon.code.contains(needle, autoescape=True))
    result = await session.execute(stmt.order_by(Coupon.created_at.desc(), Coupon.code))
    return list(result.scalars().all())


async def require_coupon(session: AsyncSession, *, code: str) -> Coupon:
    coupon = await get_coupon_model(session, code=code)
    if not coupon:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_DETAIL_COUPON_NOT_FOUND)
    return coupon


async def create_coupon(session: AsyncSession, payload: CouponCreate, *, actor: str | None = None) -> Coupon:
    code = normalize_code(payload.code)
    await _ensure_code_available(session, code=code)
    coupon = Coupon(
        **payload.model_dump(exclude={"code"}),
        code=code,
        usage_count=0,
        created_by=actor,
        updated_by=actor,
    )
    _validate_rules(coupon)
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_code": coupon.code})
    return coupon


async def update_coupon(
    session: AsyncSession,
    *,
    code: str,
    payload: CouponUpdate,
    actor: str | None = None,
) -> Coupon:
    coupon = await require_coupon(session, code=code)
    data = {
        field: value
        for field, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or field in _NULLABLE_FIELDS
    }
    new_code = normalize_code(data.pop("code", None)) or coupon.code
    if new_code != coupon.code:
        await _ensure_code_available(session, code=new_code)
        # Per-customer counters follow the coupon; ledger rows keep the code they were written with.
        await session.execute(
            update(CouponCustomerUsage)
            .where(CouponCustomerUsage.coupon_code == coupon.code)
            .values(coupon_code=new_code)
            .execution_options(synchronize_session=False)
        )
        coupon.code = new_code
    for field, value in data.items():
        setattr(coupon, field, value)
    coupon.updated_by = actor or coupon.updated_by
    try:
        _validate_rules(coupon)
    except HTTPException:
        await session.rollback()
        raise
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        # A redemption committed meanwhile and the new limit or code no longer fits.
        await session.rollback()
        logger.info("coupon_update_conflict", extra={"coupon_code": code, "fields": sorted(data)})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Coupon changed concurrently; reload and retry",
        )
    await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_code": coupon.code, "fields": sorted(data)})
    return coupon


async def delete_coupon(session: AsyncSession, *, code: str) -> None:
    coupon = await require_coupon(session, code=code)
    await session.execute(delete(Coupon).where(Coupon.id == coupon.id))
    # Ledger rows stay for reporting; counters would otherwise carry over to a recreated code.
    await session.execute(delete(CouponCustomerUsage).where(CouponCustomerUsage.coupon_code == coupon.code))
    await session.commit()
    logger.info("coupon_deleted", extra={"coupon_code": coupon.code})
