"""
Tests for the proxy HTTP surface
"""

import httpx
import pytest
from starlette.testclient import TestClient

from mcp_sse_proxy.config import ConnectionConfig, ProxyConfig, ProxySettings
from mcp_sse_proxy.main import create_app

TARGET = "http://legacy.example.com/mcp"
AUTH = {"Authorization": "Bearer secret"}


@pytest.fixture
def client(fake_target):
    """Proxy app wired to the fake target"""
    config = ProxyConfig(
        proxy=ProxySettings(MCP_PROXY_API_KEY="secret"),
        connection=ConnectionConfig(response_timeout_seconds=2.0, id_strategy="sequential")
    )
    app = create_app(config, transport=httpx.MockTransport(fake_target.handler))
    with TestClient(app) as test_client:
        yield test_client


def call(client, body, headers=None):
    all_headers = {**AUTH, "X-Target-Server": TARGET}
    all_headers.update(headers or {})
    return client.post("/mcp", json=body, headers=all_headers)


class TestHealth:
    """Tests for GET /health"""

    def test_health_empty_pool(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connections"] == 0
        assert data["pool"] == []
        assert "timestamp" in data

    def test_health_reports_pool(self, client):
        call(client, {"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

        data = client.get("/health").json()

        assert data["connections"] == 1
        assert data["pool"][0]["target"] == TARGET
        assert data["pool"][0]["healthy"] is True


class TestMcpEndpoint:
    """Tests for POST /mcp"""

    def test_forwards_call(self, client, fake_target):
        """Test a call is forwarded and the target's answer returned"""
        fake_target.responder = lambda body: {"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}}

        response = call(client, {"jsonrpc": "2.0", "id": 42, "method": "tools/list", "params": {}})

        assert response.status_code == 200
        assert response.json() == {"jsonrpc": "2.0", "id": "1", "result": {"tools": []}}
        assert fake_target.posts == [{"jsonrpc": "2.0", "method": "tools/list", "id": "1", "params": {}}]

    def test_target_credential_forwarded(self, client, fake_target):
        """Test X-Target-Api-Key reaches the target as a Bearer token"""
        call(client, {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}, {"X-Target-Api-Key": "downstream"})

        assert fake_target.handshakes[0].headers["authorization"] == "Bearer downstream"
        assert fake_target.post_requests[0].headers["authorization"] == "Bearer downstream"

    def test_missing_authorization(self, client, fake_target):
        response = client.post("/mcp", json={"method": "tools/list"}, headers={"X-Target-Server": TARGET})

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == -32001
        assert error["data"]["type"] == "unauthorized"
        assert fake_target.handshakes == []

    def test_invalid_api_key(self, client):
        response = call(client, {"method": "tools/list"}, {"Authorization": "Bearer wrong"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    def test_malformed_target(self, client, fake_target):
        response = call(client, {"jsonrpc": "2.0", "id": 4, "method": "tools/list"}, {"X-Target-Server": "http://"})

        assert response.status_code == 400
        assert response.json()["error"]["data"]["type"] == "invalid_request"
        assert fake_target.handshakes == []

    def test_missing_target_header(self, client):
        response = client.post("/mcp", json={"id": 3, "method": "tools/list"}, headers=AUTH)

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == -32600
        assert "X-Target-Server" in body["error"]["message"]

    def test_invalid_json(self, client):
        response = client.post(
            "/mcp",
            content=b"{not json",
            headers={**AUTH, "X-Target-Server": TARGET, "Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("Parse error")

    def test_body_must_be_object(self, client):
        response = call(client, [{"method": "tools/list"}])

        assert response.status_code == 400
        assert "JSON object" in response.json()["error"]["message"]

    def test_missing_method(self, client):
        response = call(client, {"jsonrpc": "2.0", "id": 9})

        assert response.status_code == 400
        body = response.json()
        assert body["id"] == 9
        assert "missing method" in body["error"]["message"]

    def test_protocol_error(self, client, fake_target):
        """Test a target error status maps to 502 with the caller's id"""
        fake_target.post_mode = "error"

        response = call(client, {"jsonrpc": "2.0", "id": 5, "method": "tools/list"})

        assert response.status_code == 502
        body = response.json()
        assert body["id"] == 5
        assert body["error"]["code"] == -32003
        assert body["error"]["data"]["type"] == "protocol_error"

    def test_connect_error(self, client, fake_target):
        """Test a failed handshake maps to 502 connect_error"""
        fake_target.handshake_status = 404

        response = call(client, {"jsonrpc": "2.0", "id": 6, "method": "tools/list"})

        assert response.status_code == 502
        assert response.json()["error"]["data"]["type"] == "connect_error"

    def test_cors_preflight(self, client):
        response = client.options(
            "/mcp",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Target-Server",
            }
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
