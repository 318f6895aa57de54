"""Integration tests for printsentry.web.api (FastAPI endpoints).

The app is attached to an orchestrator built from a fake scanner and a mocked
central client, so no network operations are attempted.
"""
from __future__ import annotations

import pytest
from conftest import make_device

import printsentry.web.api as api_module
from printsentry.agent import AgentOrchestrator
from printsentry.models import DeviceStatus


@pytest.fixture
def agent(agent_config, fake_scanner, fake_central):
    fake_scanner.devices.append(make_device("192.168.1.60", status=DeviceStatus.OFFLINE))
    orchestrator = AgentOrchestrator(
        agent_config, scanner_factory=lambda config: fake_scanner, central=fake_central
    )
    orchestrator.scan_network()
    return orchestrator


@pytest.fixture(autouse=True)
def _attach(agent):
    """Attach the agent for the duration of a test, without an API key."""
    api_module.attach(agent)
    yield
    api_module.attach(None)


@pytest.fixture
def client():
    """Provide a Starlette TestClient wired to the FastAPI app."""
    from starlette.testclient import TestClient
    return TestClient(api_module.app)


# ---------- endpoint tests ----------

class TestRootEndpoint:
    def test_root_redirects(self, client):
        """GET / should redirect to the API docs."""
        resp = client.get("/", follow_redirects=False)
        assert resp.status_code == 307
        assert "/docs" in resp.headers.get("location", "")


class TestStatusEndpoints:
    def test_health(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "Stopped"
        assert data["devicesMonitored"] == 2
        assert "1 devices offline" in data["issues"]

    def test_metrics(self, client):
        data = client.get("/api/v1/metrics").json()
        assert data["scansCompleted"] == 1
        assert data["devicesOffline"] == 1

    def test_no_agent_is_503(self, client):
        api_module.attach(None)
        assert client.get("/api/v1/health").status_code == 503


class TestDeviceEndpoints:
    def test_list_devices(self, client):
        data = client.get("/api/v1/devices").json()
        assert data["total"] == 2
        assert {d["ipAddress"] for d in data["items"]} == {"192.168.1.50", "192.168.1.60"}

    def test_filter_by_status(self, client):
        data = client.get("/api/v1/devices", params={"status": "Offline"}).json()
        assert [d["ipAddress"] for d in data["items"]] == ["192.168.1.60"]

    def test_invalid_status_filter(self, client):
        assert client.get("/api/v1/devices", params={"status": "Melted"}).status_code == 422

    def test_get_device(self, client):
        resp = client.get("/api/v1/devices/192.168.1.50")
        assert resp.status_code == 200
        assert resp.json()["name"] == "HP-LaserJet-4000"

    def test_unknown_device_is_404(self, client):
        assert client.get("/api/v1/devices/10.9.9.9").status_code == 404


class TestActionEndpoints:
    def test_scan(self, client, agent):
        resp = client.post("/api/v1/scan")
        assert resp.status_code == 200
        assert resp.json() == {"status": "completed", "devicesFound": 2, "devicesMonitored": 2}
        assert agent.get_metrics().scans_completed == 2

    def test_report(self, client, fake_central):
        resp = client.post("/api/v1/report")
        assert resp.json() == {"sent": True}
        fake_central.send_report.assert_called_once()

    def test_command(self, client):
        resp = client.post("/api/v1/commands", json={"commandId": "c-9", "type": "ClearAlerts"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["commandId"] == "c-9"
        assert data["success"] is True
        assert data["data"] == {"cleared": 2}

    def test_unknown_command_type(self, client):
        data = client.post("/api/v1/commands", json={"commandId": "c-10", "type": "Reboot"}).json()
        assert data["success"] is False


class TestConfigurationEndpoints:
    def test_get_configuration_masks_key(self, client):
        data = client.get("/api/v1/configuration").json()
        assert data["agentId"] == "agent-test"
        assert data["apiKey"] == "***"

    def test_update_configuration(self, client, agent):
        resp = client.put("/api/v1/configuration", json={"scanInterval": 900, "location": "Floor 3"})
        assert resp.status_code == 200
        assert resp.json()["scanInterval"] == 900
        assert agent.config.location == "Floor 3"

    def test_invalid_configuration_is_400(self, client, agent):
        resp = client.put("/api/v1/configuration", json={"heartbeatInterval": 0})
        assert resp.status_code == 400
        assert agent.config.heartbeat_interval == 60


class TestAuth:
    def test_bearer_key_required(self, client, agent):
        api_module.attach(agent, api_key="local-secret")
        assert client.get("/api/v1/health").status_code == 401
        assert client.get("/api/v1/health", headers={"Authorization": "Bearer wrong"}).status_code == 401
        ok = client.get("/api/v1/health", headers={"Authorization": "Bearer local-secret"})
        assert ok.status_code == 200

    def test_token_query_parameter(self, client, agent):
        api_module.attach(agent, api_key="local-secret")
        assert client.get("/api/v1/metrics", params={"token": "local-secret"}).status_code == 200
