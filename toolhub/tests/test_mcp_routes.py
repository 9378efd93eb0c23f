"""REST API tests for /api/mcp."""

import pytest
from starlette.testclient import TestClient

from toolhub.infrastructure.app_factory import AppFactory
from toolhub.main import create_app
from toolhub.modules.registry import InMemoryServerRegistry
from toolhub.tests.conftest import FakeClientFactory, tools

URL_A = "http://routes-a.test/mcp"
URL_B = "http://routes-b.test/mcp"

ALICE = {"X-User-Email": "alice@example.com"}
BOB = {"X-User-Email": "bob@example.com"}

POLICY = {"max_retries": 0, "retry_delay_ms": 100, "timeout_ms": 5000}


@pytest.fixture
def fake_clients():
    factory = FakeClientFactory()
    factory.add(URL_A, tools=tools("search", "fetch"))
    factory.add(URL_B, connect_error=ConnectionRefusedError("Connection refused"))
    return factory


@pytest.fixture
def client(fake_clients):
    app_factory = AppFactory(registry=InMemoryServerRegistry(), client_factory=fake_clients)
    with TestClient(create_app(app_factory)) as test_client:
        yield test_client


def create_server(client, name="Search", url=URL_A, headers=ALICE, **fields):
    body = {"name": name, "transport": {"kind": "stream", "url": url}, "policy": POLICY, **fields}
    resp = client.post("/api/mcp/servers", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestServerCrudRoutes:
    def test_create_get_list(self, client):
        created = create_server(client, description="web search")

        fetched = client.get(f"/api/mcp/servers/{created['id']}", headers=ALICE)
        listed = client.get("/api/mcp/servers", headers=ALICE)

        assert fetched.status_code == 200
        assert fetched.json()["description"] == "web search"
        assert fetched.json()["connection_status"] == "disconnected"
        assert [s["id"] for s in listed.json()["servers"]] == [created["id"]]

    def test_unauthenticated_request_rejected(self, client):
        resp = client.get("/api/mcp/servers")

        assert resp.status_code == 401

    def test_private_server_is_not_found_for_others(self, client):
        created = create_server(client)

        resp = client.get(f"/api/mcp/servers/{created['id']}", headers=BOB)

        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "SERVER_NOT_FOUND"

    def test_invalid_policy_rejected(self, client):
        body = {
            "name": "bad",
            "transport": {"kind": "stream", "url": URL_A},
            "policy": {"max_retries": 11},
        }

        resp = client.post("/api/mcp/servers", json=body, headers=ALICE)

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_POLICY"

    def test_invalid_transport_rejected(self, client):
        body = {"name": "bad", "transport": {"kind": "stream", "url": URL_A, "command": "run"}}

        resp = client.post("/api/mcp/servers", json=body, headers=ALICE)

        assert resp.status_code == 400

    def test_empty_patch_rejected(self, client):
        created = create_server(client)

        resp = client.patch(f"/api/mcp/servers/{created['id']}", json={}, headers=ALICE)

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "EMPTY_PATCH"

    def test_patch_and_delete(self, client):
        created = create_server(client)

        patched = client.patch(f"/api/mcp/servers/{created['id']}", json={"name": "Renamed"}, headers=ALICE)
        deleted = client.delete(f"/api/mcp/servers/{created['id']}", headers=ALICE)
        missing = client.get(f"/api/mcp/servers/{created['id']}", headers=ALICE)

        assert patched.json()["name"] == "Renamed"
        assert deleted.status_code == 200
        assert missing.status_code == 404


class TestConnectionRoutes:
    def test_connect_and_conflict(self, client):
        created = create_server(client)

        first = client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)
        second = client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)
        fetched = client.get(f"/api/mcp/servers/{created['id']}", headers=ALICE)

        assert first.status_code == 200
        assert first.json()["result"]["status"] == "connected"
        assert [t["name"] for t in first.json()["result"]["tools"]] == ["search", "fetch"]
        assert second.status_code == 409
        assert fetched.json()["connection_status"] == "connected"

    def test_failed_connect_reports_error(self, client):
        created = create_server(client, name="Down", url=URL_B)

        resp = client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)

        assert resp.status_code == 200
        assert resp.json()["result"]["status"] == "error"
        assert "refused" in resp.json()["result"]["last_error"].lower()

    def test_unknown_action(self, client):
        created = create_server(client)

        resp = client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "dance"}, headers=ALICE)

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_ACTION"

    def test_unsaved_transport_test(self, client):
        ok = client.post(
            "/api/mcp/test-connection",
            json={"transport": {"kind": "stream", "url": URL_A}},
            headers=ALICE,
        )
        refused = client.post(
            "/api/mcp/test-connection",
            json={"transport": {"kind": "stream", "url": URL_B}},
            headers=ALICE,
        )

        assert ok.json()["success"] is True
        assert ok.json()["tool_count"] == 2
        assert refused.json()["success"] is False
        assert refused.json()["error_code"] == "CONNECTION_REFUSED"

    def test_toggle_disables(self, client):
        created = create_server(client)
        client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)

        resp = client.post(f"/api/mcp/servers/{created['id']}/toggle", json={"enabled": False}, headers=ALICE)

        assert resp.json()["is_enabled"] is False
        assert resp.json()["connection_status"] == "disconnected"


class TestToolRoutes:
    def test_user_tools_and_status(self, client):
        search = create_server(client)
        down = create_server(client, name="Down", url=URL_B)

        tools_resp = client.get("/api/mcp/tools", headers=ALICE)
        status_resp = client.get("/api/mcp/status", headers=ALICE)

        assert [t["name"] for t in tools_resp.json()["tools"]] == ["search", "fetch"]
        assert tools_resp.json()["functions"][0]["type"] == "function"
        statuses = status_resp.json()["servers"]
        assert statuses[search["id"]]["status"] == "connected"
        assert statuses[down["id"]]["status"] == "error"

    def test_server_tool_listing_and_switches(self, client):
        created = create_server(client)
        client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)

        switched = client.patch(
            f"/api/mcp/servers/{created['id']}/tools/fetch", json={"enabled": False}, headers=ALICE
        )
        missing = client.patch(
            f"/api/mcp/servers/{created['id']}/tools/nope", json={"enabled": False}, headers=ALICE
        )
        listing = client.get(f"/api/mcp/servers/{created['id']}/tools", headers=ALICE)

        assert switched.json()["is_enabled"] is False
        assert missing.status_code == 404
        enabled = {t["name"]: t["user_enabled"] for t in listing.json()["tools"]}
        assert enabled == {"fetch": False, "search": True}
        assert [t["name"] for t in client.get("/api/mcp/tools", headers=ALICE).json()["tools"]] == ["search"]

    def test_public_server_needs_user_config(self, client):
        shared = create_server(client, is_public=True)

        before = client.get("/api/mcp/tools", headers=BOB)
        config = client.put(f"/api/mcp/configs/{shared['id']}", json={"enabled": True}, headers=BOB)
        override = client.put(
            f"/api/mcp/configs/{shared['id']}/tools/search", json={"enabled": False}, headers=BOB
        )
        after = client.get("/api/mcp/tools", headers=BOB)

        assert before.json()["tools"] == []
        assert config.json()["is_enabled"] is True
        assert override.json()["tool_overrides"] == {"search": False}
        assert [t["name"] for t in after.json()["tools"]] == ["fetch"]

    def test_credentials_stored_encrypted(self, client, fake_clients):
        created = create_server(client)

        resp = client.put(
            f"/api/mcp/credentials/{created['id']}", json={"credentials": {"api_key": "k"}}, headers=ALICE
        )
        client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)

        assert resp.json()["has_credentials"] is True
        assert "api_key" not in resp.text
        assert fake_clients.clients[-1].credentials == {"api_key": "k"}


class TestDashboardRoute:
    def test_dashboard(self, client):
        created = create_server(client)
        create_server(client, name="Down", url=URL_B)
        client.post(f"/api/mcp/servers/{created['id']}/connect", json={"action": "connect"}, headers=ALICE)

        data = client.get("/api/mcp/dashboard", headers=ALICE).json()

        assert data["total_servers"] == 2
        assert data["connected_servers"] == 1
        assert data["total_tools"] == 2
        assert {s["name"]: s["health"] for s in data["servers"]} == {"Search": "active", "Down": "inactive"}


class TestTemplateRoutes:
    def test_templates_grouped_by_category(self, client):
        data = client.get("/api/mcp/templates", headers=ALICE).json()

        assert data["total_templates"] == len(data["templates"]) > 0
        ids = {t["id"] for t in data["templates"]}
        assert {"custom-http", "custom-sse"} <= ids
        grouped = [t["id"] for group in data["categories"].values() for t in group]
        assert sorted(grouped) == sorted(ids)
        for category, group in data["categories"].items():
            assert all(t["category"] == category for t in group)

    def test_templates_require_identity(self, client):
        assert client.get("/api/mcp/templates").status_code == 401
