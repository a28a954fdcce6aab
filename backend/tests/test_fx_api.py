import asyncio
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.db.session import get_session
from app.main import app
from app.models import Base


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def test_fx_rates_fall_back_to_configured_defaults(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.get("/api/v1/fx/rates")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["base"] == "USD"
    assert body["source"] == "settings"
    assert body["snapshot_id"] is None
    assert set(body["rates"]) == {"USD", "SAR", "EGP"}


def test_admin_can_store_new_snapshot(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    headers = {"X-Admin-Token": settings.admin_api_token}

    unauthorized = client.put("/api/v1/fx/admin/rates", json={"rates": {"USD": "1"}})
    assert unauthorized.status_code == 401

    incomplete = client.put("/api/v1/fx/admin/rates", json={"rates": {"USD": "1", "EGP": "48"}}, headers=headers)
    assert incomplete.status_code == 400
    assert "SAR" in incomplete.json()["detail"]

    stored = client.put(
        "/api/v1/fx/admin/rates",
        json={"rates": {"USD": "1", "SAR": "3.75", "EGP": "48.5"}, "as_of": "2026-03-01"},
        headers=headers,
    )
    assert stored.status_code == 200, stored.text
    assert stored.json()["source"] == "admin"
    assert stored.json()["snapshot_id"]

    current = client.get("/api/v1/fx/rates").json()
    assert current["as_of"] == "2026-03-01"
    assert current["rates"]["EGP"] == "48.5"
