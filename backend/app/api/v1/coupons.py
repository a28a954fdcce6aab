from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import require_admin
from app.db.session import get_session
from app.models.coupon import Coupon, CouponRedemptionAttempt
from app.schemas.coupons import (
    CouponCreate,
    CouponOrderRequest,
    CouponPublic,
    CouponRead,
    CouponRedemptionAttemptRead,
    CouponRedemptionRead,
    CouponReportRead,
    CouponUpdate,
    CouponValidationRead,
)
from app.services import coupon_store, redemption_ledger
from app.services import coupons as coupons_service
from app.services.coupon_validator import CouponOrder

router = APIRouter(prefix="/coupons", tags=["coupons"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
AdminDep = Annotated[str, Depends(require_admin)]
IsActiveQuery = Annotated[bool | None, Query()]
SearchQuery = Annotated[str | None, Query(max_length=64)]
ReportDateQuery = Annotated[str | None, Query(max_length=40)]
# Out-of-range limits are clamped by the report service rather than refused.
ReportLimitQuery = Annotated[int | None, Query()]


def _order_from_request(payload: CouponOrderRequest) -> CouponOrder:
    return CouponOrder(
        amount=payload.amount,
        currency=payload.currency,
        context=payload.context,
        customer_id=(payload.customer_id or "").strip() or None,
        order_id=(payload.order_id or "").strip() or None,
    )


def _validation_fields(result: coupons_service.CouponValidationResult) -> dict[str, object]:
    return {
        "valid": result.valid,
        "code": result.code,
        "currency": result.currency,
        "context": result.context,
        "original_amount": result.original_amount,
        "discount_amount": result.discount_amount,
        "coupon_currency": result.coupon_currency,
        "order_discount_amount": result.order_discount_amount,
        "final_amount": result.final_amount,
        "reject_reason": result.reject_reason,
        "coupon": CouponPublic(**result.coupon.public_view()) if result.coupon and result.valid else None,
    }


@router.post("/validate", response_model=CouponValidationRead)
async def validate_coupon(payload: CouponOrderRequest, session: SessionDep) -> CouponValidationRead:
    result = await coupons_service.validate_coupon(session, payload.code, _order_from_request(payload))
    return CouponValidationRead(**_validation_fields(result))


@router.post("/redeem", response_model=CouponRedemptionRead)
async def redeem_coupon(payload: CouponOrderRequest, session: SessionDep) -> CouponRedemptionRead:
    result = await coupons_service.redeem_coupon(session, payload.code, _order_from_request(payload))
    return CouponRedemptionRead(**_validation_fields(result), committed=result.committed, replayed=result.replayed)


@router.get("/admin/report", response_model=CouponReportRead)
async def coupon_report(
    session: SessionDep,
    _: AdminDep,
    start_date: ReportDateQuery = None,
    end_date: ReportDateQuery = None,
    limit: ReportLimitQuery = None,
) -> CouponReportRead:
    return await coupons_service.get_coupon_report(session, start_date, end_date, limit)


@router.get("/admin/coupons", response_model=list[CouponRead])
async def admin_list_coupons(
    session: SessionDep,
    _: AdminDep,
    is_active: IsActiveQuery = None,
    search: SearchQuery = None,
) -> list[Coupon]:
    return await coupon_store.list_coupons(session, is_active=is_active, search=search)


@router.post("/admin/coupons", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(payload: CouponCreate, session: SessionDep, admin: AdminDep) -> Coupon:
    return await coupon_store.create_coupon(session, payload, actor=admin)


@router.get("/admin/coupons/{code}", response_model=CouponRead)
async def admin_get_coupon(code: str, session: SessionDep, _: AdminDep) -> Coupon:
    return await coupon_store.require_coupon(session, code=code)


@router.patch("/admin/coupons/{code}", response_model=CouponRead)
async def admin_update_coupon(code: str, payload: CouponUpdate, session: SessionDep, admin: AdminDep) -> Coupon:
    return await coupon_store.update_coupon(session, code=code, payload=payload, actor=admin)


@router.delete("/admin/coupons/{code}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(code: str, session: SessionDep, _: AdminDep) -> None:
    await coupon_store.delete_coupon(session, code=code)


@router.get("/admin/coupons/{code}/redemptions", response_model=list[CouponRedemptionAttemptRead])
async def admin_coupon_redemptions(code: str, session: SessionDep, _: AdminDep) -> list[CouponRedemptionAttempt]:
    # Ledger rows outlive the coupon, so a deleted code still has history.
    return await redemption_ledger.list_for_coupon(session, code=coupon_store.normalize_code(code))
