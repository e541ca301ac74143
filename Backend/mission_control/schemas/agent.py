"""Pydantic schemas for agents reported by the gateway and agent control requests."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AgentStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"
    ERROR = "error"


class Agent(BaseModel):
    id: str
    name: str
    session_id: str
    status: AgentStatus
    current_task: Optional[str] = None
    last_activity: datetime
    uptime_seconds: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentList(BaseModel):
    agents: List[Agent]
    count: int
    timestamp: datetime


class AgentMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=10000)


class AgentRestartRequest(BaseModel):
    interval: str = Field("30m", pattern=r"^\d+[smh]$")


class AgentActionResponse(BaseModel):
    agent_id: str
    action: str
    message: str
