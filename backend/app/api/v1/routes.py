import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1 import coupons
from app.api.v1 import fx
from app.core.metrics import snapshot as metrics_snapshot
from app.db.session import get_session
from app.services import fx_store

logger = logging.getLogger(__name__)

api_router = APIRouter()

api_router.include_router(coupons.router)
api_router.include_router(fx.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    """Ready once the store answers and a rate snapshot can be resolved for reporting."""
    try:
        rates = await fx_store.get_rate_snapshot(session)
    except SQLAlchemyError:
        logger.warning("readiness_check_failed", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ready", "fx_source": rates.source}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
