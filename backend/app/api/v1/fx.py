from fastapi import APIRouter, Depends

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import require_admin
from app.db.session import get_session
from app.schemas.fx import FxRatesRead, FxRatesUpdate
from app.services import fx_store
from app.services.fx_rates import RateSnapshot

router = APIRouter(prefix="/fx", tags=["fx"])


def _to_read(snapshot: RateSnapshot) -> FxRatesRead:
    return FxRatesRead(
        base=snapshot.base,
        rates={currency.value: rate for currency, rate in snapshot.rates.items()},
        as_of=snapshot.as_of,
        source=snapshot.source,
        snapshot_id=snapshot.snapshot_id,
    )


@router.get("/rates", response_model=FxRatesRead)
async def read_fx_rates(session: AsyncSession = Depends(get_session)) -> FxRatesRead:
    return _to_read(await fx_store.get_rate_snapshot(session))


@router.put("/admin/rates", response_model=FxRatesRead)
async def replace_fx_rates(
    payload: FxRatesUpdate,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
) -> FxRatesRead:
    snapshot = await fx_store.save_rate_snapshot(
        session,
        rates=payload.rates,
        as_of=payload.as_of,
        source=payload.source,
    )
    return _to_read(snapshot)
