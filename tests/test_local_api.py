"""Tests for the local status API."""
import asyncio

import httpx
import pytest

from cybershield_agent.routers.local import LocalApiContext, create_local_api
from cybershield_agent.services.scheduler import SchedulerService
from cybershield_agent.services.state import AgentStatus
from cybershield_agent.services.task_runner import TaskRunner

from conftest import FakeScanners

TOKEN = "local-token"


@pytest.fixture
async def gate():
    event = asyncio.Event()
    event.set()
    return event


@pytest.fixture
async def runner(state, store, tmp_path, gate):
    task_runner = TaskRunner(state, store, str(tmp_path / "reports"), scanners=FakeScanners(gate=gate))
    yield task_runner
    gate.set()
    await task_runner.wait_idle()


@pytest.fixture
async def client(state, store, runner):
    await store.set("localApiToken", TOKEN)
    await store.set("serverToken", "server-secret")
    app = create_local_api(LocalApiContext(
        state=state, store=store, runner=runner, scheduler=SchedulerService(runner, store),
    ))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://agent.test") as http:
        yield http


AUTH = {"Authorization": f"Bearer {TOKEN}"}


async def test_health_needs_no_token(client, state):
    state.status = AgentStatus.ONLINE
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "1.0.0", "agentStatus": "online"}


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": TOKEN}])
async def test_api_requires_bearer_token(client, headers):
    response = await client.get("/api/info", headers=headers)
    assert response.status_code == 401


async def test_info(client):
    response = await client.get("/api/info", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "agent-1"
    assert "agentId" not in body
    assert body["sessionState"] == "disconnected"
    assert body["activeScan"] is None


async def test_config_hides_credentials(client):
    response = await client.get("/api/config", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert "serverToken" not in body
    assert "localApiToken" not in body
    assert body["scanInterval"] == "0 */6 * * *"


@pytest.mark.parametrize("key", ["serverToken", "localApiToken", "tempDeviceToken", "agentId"])
async def test_config_rejects_protected_keys(client, store, key):
    response = await client.post("/api/config", headers=AUTH, json={key: "x"})
    assert response.status_code == 400
    assert await store.get("localApiToken") == TOKEN


async def test_config_update(client, store):
    response = await client.post(
        "/api/config", headers=AUTH, json={"telemetryEnabled": False, "scanInterval": "0 2 * * *"},
    )
    assert response.status_code == 200
    assert await store.get("telemetryEnabled") is False
    assert await store.get("scanInterval") == "0 2 * * *"


async def test_config_accepts_plain_key_value_map(client, store):
    response = await client.post("/api/config", headers=AUTH, json={"autoUpdate": False})
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert await store.get("autoUpdate") is False


async def test_config_body_must_be_an_object(client):
    response = await client.post("/api/config", headers=AUTH, json=["autoUpdate"])
    assert response.status_code == 422


async def test_config_rejects_invalid_schedule(client, store):
    response = await client.post("/api/config", headers=AUTH, json={"scanInterval": "nope"})
    assert response.status_code == 400
    assert await store.get("scanInterval") == "0 */6 * * *"


async def test_scan_accepted_then_conflict(client, runner, gate):
    gate.clear()
    response = await client.post("/api/scan", headers=AUTH, json={"type": "system"})
    assert response.status_code == 202
    scan_id = response.json()["scanId"]
    assert runner.active.id == scan_id

    busy = await client.post("/api/scan", headers=AUTH, json={"type": "quick"})
    assert busy.status_code == 409


async def test_scan_type_validated(client):
    response = await client.post("/api/scan", headers=AUTH, json={"type": "thorough"})
    assert response.status_code == 422
