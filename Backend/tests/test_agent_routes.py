from typing import List

import pytest

from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.services.gateway import GatewayClient, GatewayTimeoutError

from conftest import audit_entries, bearer

SESSIONS = [
    {"key": "agent:main:main", "agentId": "main", "sessionId": "sess-1", "age": 60_000, "updatedAt": 1767225600000},
    {"key": "agent:ops:main", "agentId": "ops", "sessionId": "sess-2", "age": 900_000, "updatedAt": 1767225600000},
]


class FakeGateway(GatewayClient):
    def __init__(self, fail_with=None):
        super().__init__(cli="unused")
        self.fail_with = fail_with
        self.calls: List[tuple] = []

    async def get_sessions(self):
        return SESSIONS

    async def _control(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    async def enable_heartbeat(self, agent_id, interval="30m"):
        await self._control("enable", agent_id, interval)

    async def disable_heartbeat(self, agent_id):
        await self._control("disable", agent_id)

    async def send_message(self, session_id, message):
        await self._control("message", session_id, message)


@pytest.fixture
def gateway(client):
    fake = FakeGateway()
    client.app.state.gateway = fake
    return fake


def test_list_agents_requires_auth(client, gateway):
    assert client.get("/api/agents").status_code == 401


def test_viewer_lists_agents(client, gateway, viewer):
    _, token = viewer
    resp = client.get("/api/agents", headers=bearer(token))
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 2
    assert [a["status"] for a in body["agents"]] == ["online", "offline"]


def test_get_agent_by_session_id(client, gateway, viewer):
    _, token = viewer
    assert client.get("/api/agents/sess-2", headers=bearer(token)).json()["id"] == "agent:ops:main"

    missing = client.get("/api/agents/ghost", headers=bearer(token))
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "AGENT_NOT_FOUND"


def test_viewer_cannot_control_agents(client, gateway, viewer):
    _, token = viewer
    resp = client.post("/api/agents/agent:main:main/stop", headers=bearer(token))
    assert resp.status_code == 403
    assert gateway.calls == []


def test_operator_stops_agent_and_it_is_audited(client, gateway, operator):
    user, token = operator
    resp = client.post("/api/agents/agent:main:main/stop", headers=bearer(token))

    assert resp.status_code == 200
    assert resp.json()["action"] == "stop"
    assert gateway.calls == [("disable", "main")]

    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.AGENT_STOP
    assert entry.result == AuditResult.SUCCESS
    assert entry.resource == "agent:agent:main:main"
    assert entry.user_id == user.id


def test_restart_uses_interval(client, gateway, admin):
    _, token = admin
    resp = client.post("/api/agents/sess-1/restart", json={"interval": "15m"}, headers=bearer(token))
    assert resp.status_code == 200
    assert gateway.calls == [("enable", "main", "15m")]

    bad = client.post("/api/agents/sess-1/restart", json={"interval": "soon"}, headers=bearer(token))
    assert bad.status_code == 400


def test_message_is_sent_to_session(client, gateway, operator):
    _, token = operator
    resp = client.post("/api/agents/agent:main:main/message", json={"message": "status?"}, headers=bearer(token))
    assert resp.status_code == 200
    assert gateway.calls == [("message", "sess-1", "status?")]
    assert audit_entries(client)[0].action == AuditAction.AGENT_MESSAGE


def test_gateway_timeout_maps_to_504_and_is_audited(client, gateway, operator):
    gateway.fail_with = GatewayTimeoutError("Gateway CLI did not respond in time")
    _, token = operator

    resp = client.post("/api/agents/agent:main:main/message", json={"message": "hi"}, headers=bearer(token))

    assert resp.status_code == 504
    assert resp.json()["error"]["code"] == "GATEWAY_TIMEOUT"
    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.AGENT_MESSAGE
    assert entry.result == AuditResult.FAILURE


def test_agent_action_is_streamed(client, gateway, operator, admin):
    _, operator_token = operator
    _, admin_token = admin
    with client.websocket_connect(f"/ws?token={admin_token}") as ws:
        client.post("/api/agents/agent:main:main/stop", headers=bearer(operator_token))

        types = {ws.receive_json()["type"] for _ in range(2)}
        assert types == {"agent:status", "audit.new"}
