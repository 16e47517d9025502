"""
בדיקות endpoints של בריאות ושירות ה-readiness
"""
import pytest
from httpx import AsyncClient, ASGITransport
from unittest.mock import patch

from app.domain.services.health_service import check_readiness
from app.main import app


@pytest.fixture
async def test_client(runtime):
    app.state.bot_runtime = runtime
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    del app.state.bot_runtime


@pytest.fixture(autouse=True)
def healthy_db():
    async def _ok() -> str:
        return "ok"

    with patch("app.domain.services.health_service._check_db", _ok):
        yield


class TestHealthEndpoints:
    @pytest.mark.unit
    async def test_liveness(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.unit
    async def test_readiness_healthy(self, test_client):
        response = await test_client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["state_store_backend"] == "redis"

    @pytest.mark.unit
    async def test_readiness_degraded_when_redis_down(self, test_client, runtime, fake_redis):
        fake_redis.fail = True
        for _ in range(3):
            await runtime.state_store.get("conv:d:s")

        response = await test_client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["redis"] == "error: redis_unavailable"
        assert body["state_store"] == "error: state_store_on_fallback"
        assert body["state_store_backend"] == "memory"


class TestCheckReadiness:
    @pytest.mark.unit
    async def test_without_runtime(self):
        result = await check_readiness(None)

        assert result["status"] == "degraded"
        assert result["state_store"] == "error: state_store_not_initialized"
        assert result["state_store_backend"] is None
