"""
Agent routes backed by the gateway client.

Reads need any authenticated user; control actions need admin or operator and
are audited and announced on the stream as ``agent:status``.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request

from mission_control.schemas.agent import (
    Agent, AgentList, AgentMessageRequest, AgentRestartRequest, AgentActionResponse,
)
from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.middleware.auth_middleware import AuthContext, get_current_user, require_operator
from mission_control.middleware.audit_log import audit_log
from mission_control.services.gateway import GatewayClient, GatewayError
from mission_control.utils.errors import ApiError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])


def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def _gateway_error(e: GatewayError) -> ApiError:
    return ApiError(e.status_code, e.code, e.message, e.details)


async def _resolve_agent(gateway: GatewayClient, agent_id: str) -> Agent:
    try:
        agent = await gateway.get_agent(agent_id)
    except GatewayError as e:
        raise _gateway_error(e)
    if agent is None:
        raise ApiError(404, "AGENT_NOT_FOUND", "Agent not found or no longer active", f"No agent found with ID: {agent_id}")
    return agent


async def _notify_status(request: Request, agent: Agent, status: str) -> None:
    stream = getattr(request.app.state, "stream", None)
    if stream is not None:
        await stream.broadcast_agent_status(agent.id, status, sessionId=agent.session_id)


@router.get("", response_model=AgentList)
async def list_agents(
    auth: AuthContext = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
):
    try:
        agents = await gateway.list_agents()
    except GatewayError as e:
        logger.error("Failed to fetch agents: %s", e)
        raise _gateway_error(e)
    return AgentList(agents=agents, count=len(agents), timestamp=datetime.now(timezone.utc))


@router.get("/{agent_id}", response_model=Agent)
async def get_agent(
    agent_id: str,
    auth: AuthContext = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
):
    return await _resolve_agent(gateway, agent_id)


@router.post("/{agent_id}/restart", response_model=AgentActionResponse)
async def restart_agent(
    agent_id: str,
    request: Request,
    data: AgentRestartRequest = AgentRestartRequest(),
    auth: AuthContext = Depends(require_operator),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Re-enable the agent's heartbeat at the given interval."""
    agent = await _resolve_agent(gateway, agent_id)
    heartbeat_id = agent.metadata.get("agentId") or agent.id
    try:
        await gateway.enable_heartbeat(heartbeat_id, data.interval)
    except GatewayError as e:
        audit_log(request, AuditAction.AGENT_RESTART, f"agent:{agent.id}", AuditResult.FAILURE, details=f"{e.code}: {e.message}")
        raise _gateway_error(e)

    audit_log(request, AuditAction.AGENT_RESTART, f"agent:{agent.id}", AuditResult.SUCCESS, details=f"Heartbeat every {data.interval}")
    await _notify_status(request, agent, "restarting")
    return AgentActionResponse(agent_id=agent.id, action="restart", message=f"Heartbeat enabled for agent {heartbeat_id} (every {data.interval})")


@router.post("/{agent_id}/stop", response_model=AgentActionResponse)
async def stop_agent(
    agent_id: str,
    request: Request,
    auth: AuthContext = Depends(require_operator),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Disable the agent's heartbeat. Active sessions are not killed."""
    agent = await _resolve_agent(gateway, agent_id)
    heartbeat_id = agent.metadata.get("agentId") or agent.id
    try:
        await gateway.disable_heartbeat(heartbeat_id)
    except GatewayError as e:
        audit_log(request, AuditAction.AGENT_STOP, f"agent:{agent.id}", AuditResult.FAILURE, details=f"{e.code}: {e.message}")
        raise _gateway_error(e)

    audit_log(request, AuditAction.AGENT_STOP, f"agent:{agent.id}", AuditResult.SUCCESS)
    await _notify_status(request, agent, "stopped")
    return AgentActionResponse(agent_id=agent.id, action="stop", message=f"Heartbeat disabled for agent {heartbeat_id}")


@router.post("/{agent_id}/message", response_model=AgentActionResponse)
async def message_agent(
    agent_id: str,
    data: AgentMessageRequest,
    request: Request,
    auth: AuthContext = Depends(require_operator),
    gateway: GatewayClient = Depends(get_gateway),
):
    agent = await _resolve_agent(gateway, agent_id)
    try:
        await gateway.send_message(agent.session_id, data.message)
    except GatewayError as e:
        audit_log(request, AuditAction.AGENT_MESSAGE, f"agent:{agent.id}", AuditResult.FAILURE, details=f"{e.code}: {e.message}")
        raise _gateway_error(e)

    audit_log(
        request, AuditAction.AGENT_MESSAGE, f"agent:{agent.id}", AuditResult.SUCCESS,
        details=f"Sent message ({len(data.message)} chars)",
    )
    await _notify_status(request, agent, "messaged")
    return AgentActionResponse(agent_id=agent.id, action="message", message="Message sent to agent session")
