"""
Agent gateway client.

Talks to the OpenClaw gateway through its CLI (``openclaw ... --json``). Every
call runs as a subprocess with an explicit timeout; on timeout the process is
killed and GatewayTimeoutError is raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from mission_control.schemas.agent import Agent, AgentStatus

logger = logging.getLogger(__name__)

BUSY_WINDOW_MS = 10_000
ONLINE_WINDOW_MS = 30_000
IDLE_WINDOW_MS = 300_000


class GatewayError(Exception):
    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class GatewayTimeoutError(GatewayError):
    code = "GATEWAY_TIMEOUT"
    status_code = 504


class GatewayUnavailableError(GatewayError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = 503


# ---------- session -> agent ----------

def compute_status(session: Dict[str, Any]) -> AgentStatus:
    age_ms = session.get("age") or 0
    flags = session.get("flags") or []
    output_tokens = session.get("outputTokens") or 0

    if session.get("abortedLastRun") or "aborted" in flags:
        return AgentStatus.ERROR
    if age_ms < BUSY_WINDOW_MS and output_tokens > 0:
        return AgentStatus.BUSY
    if age_ms < IDLE_WINDOW_MS:
        return AgentStatus.ONLINE
    return AgentStatus.OFFLINE


def agent_display_name(session: Dict[str, Any]) -> str:
    agent_id = session.get("agentId") or "unknown"
    return " ".join(w[:1].upper() + w[1:] for w in agent_id.split("-")) + " Agent"


def task_description(session: Dict[str, Any]) -> Optional[str]:
    age_ms = session.get("age") or 0
    output_tokens = session.get("outputTokens") or 0
    percent_used = session.get("percentUsed") or 0

    if age_ms < BUSY_WINDOW_MS and output_tokens > 0:
        return f"Processing ({output_tokens} tokens output)"
    if percent_used > 0:
        return f"Context: {percent_used}% used ({session.get('totalTokens') or 0:,} tokens)"
    return None


def transform_session(session: Dict[str, Any]) -> Agent:
    updated_ms = session.get("updatedAt")
    if updated_ms:
        last_activity = datetime.fromtimestamp(updated_ms / 1000, tz=timezone.utc)
    else:
        last_activity = datetime.now(timezone.utc)

    return Agent(
        id=session["key"],
        name=agent_display_name(session),
        session_id=session.get("sessionId") or session["key"],
        status=compute_status(session),
        current_task=task_description(session),
        last_activity=last_activity,
        uptime_seconds=int((session.get("age") or 0) // 1000),
        metadata={
            "agentId": session.get("agentId"),
            "kind": session.get("kind"),
            "model": session.get("model"),
            "totalTokens": session.get("totalTokens"),
            "remainingTokens": session.get("remainingTokens"),
            "percentUsed": session.get("percentUsed"),
            "contextTokens": session.get("contextTokens"),
            "flags": session.get("flags"),
            "abortedLastRun": session.get("abortedLastRun"),
        },
    )


def transform_sessions(sessions: List[Dict[str, Any]]) -> List[Agent]:
    agents: List[Agent] = []
    for session in sessions:
        try:
            agents.append(transform_session(session))
        except (KeyError, TypeError, ValueError):
            logger.exception("Failed to transform gateway session key=%s", session.get("key"))
    return agents


# ---------- client ----------

class GatewayClient:
    def __init__(
        self,
        cli: str = "openclaw",
        timeout: float = 5.0,
        health_timeout: float = 2.0,
        message_timeout: float = 60.0,
    ):
        self.cli = cli
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.message_timeout = message_timeout

    async def _run(self, args: Sequence[str], timeout: float) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error("Gateway CLI not found cli=%s", self.cli)
            raise GatewayUnavailableError(f"{self.cli} command not found")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("Gateway CLI timeout args=%s timeout=%ss", args[:3], timeout)
            raise GatewayTimeoutError("Gateway CLI did not respond in time", details=f"timeout after {timeout}s")

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            logger.error("Gateway CLI failed args=%s returncode=%s stderr=%s", args[:3], proc.returncode, err_text)
            raise GatewayError("Gateway CLI request failed", details=err_text or f"exit code {proc.returncode}")
        if err_text:
            logger.debug("Gateway CLI stderr: %s", err_text)
        return stdout.decode("utf-8", errors="replace")

    async def _run_json(self, args: Sequence[str], timeout: float) -> Any:
        out = await self._run([*args, "--json"], timeout)
        try:
            return json.loads(out)
        except ValueError as e:
            raise GatewayError("Gateway CLI returned invalid JSON", details=str(e))

    async def get_status(self) -> Dict[str, Any]:
        return await self._run_json(["gateway", "call", "status"], self.timeout)

    async def get_sessions(self) -> List[Dict[str, Any]]:
        status = await self.get_status()
        sessions = (status or {}).get("sessions") or {}
        recent = sessions.get("recent")
        if not recent:
            logger.warning("No sessions found in gateway response")
            return []
        return recent

    async def list_agents(self) -> List[Agent]:
        return transform_sessions(await self.get_sessions())

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        needle = agent_id.lower()
        for agent in await self.list_agents():
            if agent.id == agent_id or agent.session_id == agent_id or needle in agent.name.lower():
                return agent
        return None

    async def check_health(self) -> bool:
        try:
            health = await self._run_json(["gateway", "call", "health"], self.health_timeout)
        except GatewayError:
            return False
        return isinstance(health, dict) and (health.get("status") == "ok" or health.get("healthy") is True)

    async def send_message(self, session_id: str, message: str) -> None:
        logger.info("Sending message to agent session session_id=%s length=%d", session_id, len(message))
        await self._run_json(
            ["agent", "--session-id", session_id, "--message", message],
            self.message_timeout,
        )

    async def disable_heartbeat(self, agent_id: str) -> None:
        await self._run_json(["config", "set", f"heartbeat.agents.{agent_id}.enabled", "false"], self.timeout)
        logger.info("Heartbeat disabled agent_id=%s", agent_id)

    async def enable_heartbeat(self, agent_id: str, interval: str = "30m") -> None:
        await self._run_json(["config", "set", f"heartbeat.agents.{agent_id}.enabled", "true"], self.timeout)
        await self._run_json(["config", "set", f"heartbeat.agents.{agent_id}.every", interval], self.timeout)
        logger.info("Heartbeat enabled agent_id=%s interval=%s", agent_id, interval)
