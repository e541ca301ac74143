"""
Pydantic schemas for audit log entries, queries and responses.

Audit payloads are exposed with camelCase keys (userId, ipAddress, ...) both on
the HTTP API, on the websocket stream and in the JSON file backend.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 1000


class AuditAction(str, Enum):
    LOGIN = "user.login"
    LOGIN_FAILED = "user.login.failed"
    LOGOUT = "user.logout"
    ROLE_CHANGED = "user.role.changed"
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    AGENT_START = "agent.start"
    AGENT_STOP = "agent.stop"
    AGENT_RESTART = "agent.restart"
    AGENT_MESSAGE = "agent.message"
    API_CALL = "api.call"
    ERROR = "error"
    UNKNOWN = "unknown"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


def normalize_action(value: Union[str, AuditAction, None]) -> AuditAction:
    """Map any incoming action to the closed set; unrecognised values become UNKNOWN."""
    if isinstance(value, AuditAction):
        return value
    try:
        return AuditAction(value)
    except ValueError:
        logger.warning("Unrecognised audit action %r recorded as 'unknown'", value)
        return AuditAction.UNKNOWN


def normalize_result(value: Union[str, AuditResult, None]) -> AuditResult:
    if isinstance(value, AuditResult):
        return value
    try:
        return AuditResult(value)
    except ValueError:
        logger.warning("Unrecognised audit result %r recorded as 'failure'", value)
        return AuditResult.FAILURE


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------------
# Entries
# -------------------------

class AuditEntryCreate(_CamelModel):
    """An event description handed to the store; id/timestamp are usually left unset."""

    id: Optional[str] = None
    timestamp: Optional[datetime] = None

    user_id: Optional[str] = None
    username: Optional[str] = None

    action: AuditAction
    resource: str
    result: AuditResult

    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class AuditEntry(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    timestamp: datetime

    user_id: Optional[str] = None
    username: Optional[str] = None

    action: AuditAction
    resource: str
    result: AuditResult

    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def to_public(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# -------------------------
# Queries
# -------------------------

class AuditLogQuery(_CamelModel):
    user_id: Optional[str] = None
    action: Optional[List[AuditAction]] = None
    result: Optional[AuditResult] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None

    limit: int = Field(DEFAULT_QUERY_LIMIT, ge=1)
    offset: int = Field(0, ge=0)

    @field_validator("action", mode="before")
    @classmethod
    def _split_actions(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, (str, AuditAction)):
            v = [v]
        actions: List[Any] = []
        for item in v:
            if isinstance(item, str):
                actions.extend(a.strip() for a in item.split(",") if a.strip())
            else:
                actions.append(item)
        return actions or None

    @field_validator("limit")
    @classmethod
    def _clamp_limit(cls, v: int) -> int:
        return min(v, MAX_QUERY_LIMIT)

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class AuditQueryResult(BaseModel):
    logs: List[AuditEntry]
    count: int
    total: int
    has_more: bool


# -------------------------
# Responses
# -------------------------

class AuditLogPage(_CamelModel):
    logs: List[Dict[str, Any]]
    count: int
    total: int
    has_more: bool


class AuditLogResponse(_CamelModel):
    success: bool = True
    data: AuditLogPage


class AuditCleanupResult(_CamelModel):
    removed: int
    retention_days: int
