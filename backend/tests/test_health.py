import asyncio
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.db.session import get_session
from app.main import app
from app.models import Base
from app.services import fx_store


@pytest.fixture
def service():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def create_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_schema())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield client, SessionLocal
    client.close()
    app.dependency_overrides.clear()


def test_liveness_tags_response_with_request_id(service) -> None:
    client, _ = service
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
    assert res.headers.get("X-Request-ID")

    echoed = client.get("/api/v1/health", headers={"X-Request-ID": "checkout-req-7"})
    assert echoed.headers["X-Request-ID"] == "checkout-req-7"


def test_readiness_reports_rate_source(service) -> None:
    client, SessionLocal = service
    assert client.get("/api/v1/health/ready").json() == {"status": "ready", "fx_source": "settings"}

    async def store_rates() -> None:
        async with SessionLocal() as session:
            await fx_store.save_rate_snapshot(
                session, rates={"USD": Decimal("1"), "SAR": Decimal("3.75"), "EGP": Decimal("48.5")}
            )

    asyncio.run(store_rates())
    assert client.get("/api/v1/health/ready").json()["fx_source"] == "admin"


def test_readiness_fails_when_database_is_down(service) -> None:
    client, _ = service

    class _DeadSession:
        async def execute(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

    async def dead_session():
        yield _DeadSession()

    app.dependency_overrides[get_session] = dead_session
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 503
    assert res.json() == {"detail": "Database unavailable", "code": None}
