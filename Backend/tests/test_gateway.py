import json
import stat
import time

import pytest

from mission_control.schemas.agent import AgentStatus
from mission_control.services.gateway import (
    GatewayClient,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    compute_status,
    transform_session,
)

STATUS_RESPONSE = {
    "sessions": {
        "count": 1,
        "recent": [
            {
                "key": "agent:main:main",
                "agentId": "main-ops",
                "sessionId": "sess-1",
                "age": 2000,
                "updatedAt": 1767225600000,
                "outputTokens": 120,
                "totalTokens": 5000,
                "percentUsed": 12,
                "model": "test-model",
            }
        ],
    }
}


def _script(tmp_path, body):
    path = tmp_path / "fake-openclaw"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


@pytest.mark.parametrize("session, expected", [
    ({"age": 1000, "outputTokens": 10}, AgentStatus.BUSY),
    ({"age": 1000, "outputTokens": 0}, AgentStatus.ONLINE),
    ({"age": 60_000}, AgentStatus.ONLINE),
    ({"age": 600_000}, AgentStatus.OFFLINE),
    ({"age": 1000, "abortedLastRun": True}, AgentStatus.ERROR),
    ({"age": 1000, "flags": ["aborted"]}, AgentStatus.ERROR),
])
def test_compute_status(session, expected):
    assert compute_status(session) == expected


def test_transform_session():
    agent = transform_session(STATUS_RESPONSE["sessions"]["recent"][0])
    assert agent.id == "agent:main:main"
    assert agent.name == "Main Ops Agent"
    assert agent.session_id == "sess-1"
    assert agent.status == AgentStatus.BUSY
    assert agent.current_task == "Processing (120 tokens output)"
    assert agent.uptime_seconds == 2
    assert agent.metadata["agentId"] == "main-ops"


@pytest.mark.asyncio
async def test_list_agents_parses_cli_output(tmp_path):
    cli = _script(tmp_path, f"cat <<'EOF'\n{json.dumps(STATUS_RESPONSE)}\nEOF")
    client = GatewayClient(cli=cli)

    agents = await client.list_agents()

    assert [a.id for a in agents] == ["agent:main:main"]
    assert (await client.get_agent("sess-1")).id == "agent:main:main"
    assert await client.get_agent("nope") is None


@pytest.mark.asyncio
async def test_timeout_kills_process(tmp_path):
    cli = _script(tmp_path, "exec sleep 5")
    client = GatewayClient(cli=cli, timeout=0.2)

    started = time.monotonic()
    with pytest.raises(GatewayTimeoutError) as exc:
        await client.get_sessions()
    assert time.monotonic() - started < 3
    assert exc.value.code == "GATEWAY_TIMEOUT"
    assert exc.value.status_code == 504


@pytest.mark.asyncio
async def test_missing_cli_is_unavailable():
    client = GatewayClient(cli="openclaw-definitely-not-installed")
    with pytest.raises(GatewayUnavailableError) as exc:
        await client.get_sessions()
    assert exc.value.code == "GATEWAY_UNAVAILABLE"


@pytest.mark.asyncio
async def test_non_zero_exit_is_gateway_error(tmp_path):
    cli = _script(tmp_path, "echo 'boom' >&2\nexit 3")
    client = GatewayClient(cli=cli)
    with pytest.raises(GatewayError) as exc:
        await client.disable_heartbeat("main")
    assert exc.value.code == "GATEWAY_ERROR"
    assert exc.value.details == "boom"


@pytest.mark.asyncio
async def test_health_check_is_false_on_failure():
    client = GatewayClient(cli="openclaw-definitely-not-installed")
    assert await client.check_health() is False


@pytest.mark.asyncio
async def test_message_arguments_are_passed_verbatim(tmp_path):
    log = tmp_path / "args.txt"
    cli = _script(tmp_path, f'printf "%s\\n" "$@" > {log}\necho "{{}}"')
    client = GatewayClient(cli=cli)

    await client.send_message("sess-1", 'hello "world"; rm -rf /')

    assert log.read_text().splitlines() == [
        "agent", "--session-id", "sess-1", "--message", 'hello "world"; rm -rf /', "--json",
    ]
