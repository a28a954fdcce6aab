import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Generator
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import metrics
from app.models import Base, Coupon, CouponDiscountType, CouponScope, Currency
from app.services.clock import FixedClock


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            await engine.dispose()

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


async def _session_factory_for(url: str, **engine_kwargs) -> async_sessionmaker[AsyncSession]:
    engine = sa_asyncio.create_async_engine(url, future=True, **engine_kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    yield await _session_factory_for("sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def file_session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Separate connections per session, so concurrent redemptions really contend."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'coupons.db'}"
    yield await _session_factory_for(url, connect_args={"timeout": 30})


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


CouponFactory = Callable[..., Awaitable[Coupon]]


@pytest.fixture
def make_coupon() -> CouponFactory:
    async def _make(session: AsyncSession, **overrides) -> Coupon:
        fields = {
            "code": "SAVE20",
            "discount_type": CouponDiscountType.percentage,
            "discount_value": Decimal("20.00"),
            "currency": Currency.EGP,
            "applies_to": CouponScope.all,
            "min_order_amount": Decimal("0.00"),
            "usage_count": 0,
            "is_active": True,
        }
        fields.update(overrides)
        coupon = Coupon(**fields)
        session.add(coupon)
        await session.commit()
        await session.refresh(coupon)
        return coupon

    return _make
