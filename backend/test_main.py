from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_status
from exceptions import UpstreamRequestError
from main import app, get_tuya_client
from models import utcnow


@pytest.fixture
def tuya():
    """Fake Tuya client injected into the control endpoints."""
    fake = MagicMock()
    fake.send_commands = AsyncMock(return_value={"success": True, "result": True})
    fake.fetch_device_status = AsyncMock(return_value=make_status(switch=True))
    app.dependency_overrides[get_tuya_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_tuya_client, None)


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "tuya_connected" in data
        assert data["consecutive_failures"] == 0


class TestMainChartEndpoint:
    @pytest.mark.asyncio
    async def test_empty_periods_are_zero_filled(self, client):
        response = await client.get("/main-chart/data")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert len(data["today"]) == 24
        assert len(data["week"]) == 7
        assert len(data["month"]) == 30
        assert data["timezone"] == "+05:30"
        assert all(bucket["power"] == 0 for bucket in data["today"])

    @pytest.mark.asyncio
    async def test_timezone_query_parameter(self, client, add_samples):
        await add_samples((utcnow(), make_status(power=1000)))

        response = await client.get("/main-chart/data", params={"timezone": "UTC"})
        data = response.json()["data"]

        assert data["timezone"] == "UTC"
        assert data["today"][utcnow().hour]["power"] == 100.0
        assert data["week"][-1]["power"] == 100.0

    @pytest.mark.asyncio
    async def test_timezone_header(self, client):
        response = await client.get("/main-chart/data", headers={"X-Timezone": "-08:00"})
        assert response.status_code == 200
        assert response.json()["data"]["timezone"] == "-08:00"

    @pytest.mark.asyncio
    async def test_invalid_timezone(self, client):
        response = await client.get("/main-chart/data", params={"timezone": "Nowhere/Land"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Invalid timezone"
        assert "Nowhere/Land" in body["details"]


class TestTodayConsumptionEndpoint:
    @pytest.mark.asyncio
    async def test_no_data(self, client):
        response = await client.get("/today-consumption", params={"timezone": "UTC"})
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": {"kwh": 0, "cost": 0, "dataPoints": 0, "rate": 10.0},
        }

    @pytest.mark.asyncio
    async def test_invalid_timezone(self, client):
        response = await client.get("/today-consumption", params={"timezone": "+99:00"})
        assert response.status_code == 400
        assert response.json()["success"] is False


class TestDataEndpoint:
    @pytest.mark.asyncio
    async def test_recent_samples(self, client, add_samples):
        await add_samples((utcnow(), make_status(power=4176, voltage=2322)))

        response = await client.get("/data")
        assert response.status_code == 200
        readings = response.json()["data"]
        assert len(readings) == 1
        assert readings[0]["cur_power"] == 4176
        assert readings[0]["cur_voltage"] == 2322


class TestSwitchEndpoint:
    @pytest.mark.asyncio
    async def test_not_configured(self, client):
        response = await client.post("/switch", json={"state": True})
        assert response.status_code == 503
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_turn_off(self, client, tuya):
        response = await client.post("/switch", json={"state": False})
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"state": False}}
        tuya.send_commands.assert_awaited_once_with([{"code": "switch_1", "value": False}])

    @pytest.mark.asyncio
    async def test_response_without_success_flag(self, client, tuya):
        tuya.send_commands.return_value = {"result": True}

        response = await client.post("/switch", json={"state": True})
        assert response.json()["success"] is True

    @pytest.mark.asyncio
    async def test_upstream_rejects(self, client, tuya):
        tuya.send_commands.return_value = {"success": False, "code": 2001, "msg": "device is offline"}

        response = await client.post("/switch", json={"state": True})
        assert response.status_code == 502
        assert response.json() == {"success": False, "error": "device is offline", "details": "code 2001"}

    @pytest.mark.asyncio
    async def test_invalid_body(self, client, tuya):
        response = await client.post("/switch", json={})
        assert response.status_code == 400
        assert response.json()["success"] is False
        tuya.send_commands.assert_not_awaited()


class TestSwitchStatusEndpoint:
    @pytest.mark.asyncio
    async def test_state(self, client, tuya):
        response = await client.get("/switch-status")
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"state": True}}

    @pytest.mark.asyncio
    async def test_switch_code_missing(self, client, tuya):
        tuya.fetch_device_status.return_value = [{"code": "cur_power", "value": 10}]

        response = await client.get("/switch-status")
        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_status_unavailable(self, client, tuya):
        tuya.fetch_device_status.return_value = None

        response = await client.get("/switch-status")
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_upstream_error(self, client, tuya):
        tuya.fetch_device_status.side_effect = UpstreamRequestError("timeout")

        response = await client.get("/switch-status")
        assert response.status_code == 502
        assert response.json()["details"] == "timeout"
