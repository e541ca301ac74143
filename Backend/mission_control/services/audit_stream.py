"""
Real-time audit stream over WebSocket.

Connection lifecycle: CONNECTING -> AUTHENTICATING -> OPEN -> CLOSING -> CLOSED.
Clients authenticate during the handshake with ``Authorization: Bearer <jwt>``
or ``?token=<jwt>``; a rejected handshake is closed before accept, which the
server turns into an HTTP 403.

Server -> client frames are ``{"type": ..., "payload": {..., "deliveredAt": ms}}``:
  audit.new, heartbeat, ping, agent:status, session:activity
Client -> server frames are optional and the server never waits on them;
``{"type": "ping"}`` is answered with ``{"type": "pong"}`` and anything else is ignored.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from mission_control.middleware.auth_middleware import AuthContext
from mission_control.schemas.audit_log import AuditEntry
from mission_control.utils.security import AuthError, extract_bearer_token

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_UNAUTHORIZED = 4001

MSG_AUDIT_NEW = "audit.new"
MSG_HEARTBEAT = "heartbeat"
MSG_PING = "ping"
MSG_PONG = "pong"
MSG_AGENT_STATUS = "agent:status"
MSG_SESSION_ACTIVITY = "session:activity"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class StreamConnection:
    """One subscriber socket. Identity is fixed once the handshake succeeds."""

    websocket: WebSocket
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    username: Optional[str] = None
    role: Optional[str] = None
    state: ConnectionState = ConnectionState.CONNECTING
    connected_at: float = field(default_factory=time.monotonic)


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_message(msg_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = dict(payload or {})
    body["deliveredAt"] = _now_ms()
    return {"type": msg_type, "payload": body}


class AuditStreamManager:
    """Registry of authenticated stream subscribers with broadcast and liveness checks."""

    def __init__(
        self,
        verify_token: Callable[[Optional[str]], AuthContext],
        heartbeat_interval: float = 30.0,
        send_timeout: float = 1.0,
    ):
        self._verify_token = verify_token
        self.heartbeat_interval = heartbeat_interval
        self.send_timeout = send_timeout

        self._connections: Dict[str, Set[StreamConnection]] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ----- registry -----

    def _all(self) -> List[StreamConnection]:
        return [c for conns in self._connections.values() for c in conns]

    @property
    def total_connections(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    def connections_for_user(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    def connected_users(self) -> List[str]:
        return sorted(self._connections.keys())

    async def _register(self, conn: StreamConnection) -> None:
        async with self._lock:
            self._connections.setdefault(conn.user_id, set()).add(conn)

    async def _unregister(self, conn: StreamConnection) -> None:
        async with self._lock:
            conns = self._connections.get(conn.user_id)
            if conns is None:
                return
            conns.discard(conn)
            if not conns:
                del self._connections[conn.user_id]

    # ----- lifecycle -----

    async def connect(self, websocket: WebSocket) -> Optional[StreamConnection]:
        """Authenticate and accept ``websocket``. Returns None if the handshake was rejected."""
        conn = StreamConnection(websocket=websocket)
        conn.state = ConnectionState.AUTHENTICATING

        token = extract_bearer_token(websocket.headers.get("authorization")) or websocket.query_params.get("token")
        try:
            auth = self._verify_token(token)
        except AuthError as e:
            client = websocket.client.host if websocket.client else None
            logger.warning("WebSocket connection rejected ip=%s reason=%s", client, e)
            conn.state = ConnectionState.CLOSED
            await websocket.close(code=CLOSE_UNAUTHORIZED)
            return None

        conn.user_id = auth.user_id
        conn.username = auth.username
        conn.role = auth.role.value

        # registered before accept; broadcasts skip it until it is OPEN
        await self._register(conn)
        try:
            await websocket.accept()
        except Exception:
            await self._unregister(conn)
            conn.state = ConnectionState.CLOSED
            raise
        conn.state = ConnectionState.OPEN

        logger.info(
            "WebSocket client connected user_id=%s username=%s total=%d",
            conn.user_id, conn.username, self.total_connections,
        )
        return conn

    async def disconnect(self, conn: StreamConnection, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close and unregister ``conn``. Safe to call more than once."""
        if conn.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        conn.state = ConnectionState.CLOSING
        await self._unregister(conn)

        try:
            await asyncio.wait_for(conn.websocket.close(code=code, reason=reason), self.send_timeout)
        except Exception as e:
            # peer already gone
            logger.debug("ws.close.error: user_id=%s error=%s", conn.user_id, e)
        finally:
            conn.state = ConnectionState.CLOSED

        logger.info(
            "WebSocket client disconnected user_id=%s code=%s total=%d",
            conn.user_id, code, self.total_connections,
        )

    async def handle_client_message(self, conn: StreamConnection, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON frame from user_id=%s", conn.user_id)
            return
        if isinstance(message, dict) and message.get("type") == MSG_PING:
            await self._send(conn, json.dumps(make_message(MSG_PONG)))

    # ----- sending -----

    async def _send(self, conn: StreamConnection, text: str) -> bool:
        try:
            await asyncio.wait_for(conn.websocket.send_text(text), self.send_timeout)
            return True
        except Exception as e:
            logger.debug("ws.send.failed: user_id=%s error=%s", conn.user_id, e)
            return False

    async def _send_many(self, targets: List[StreamConnection], message: Dict[str, Any]) -> int:
        if not targets:
            return 0
        text = json.dumps(message)
        results = await asyncio.gather(*(self._send(c, text) for c in targets))

        dead = [c for c, ok in zip(targets, results) if not ok]
        for conn in dead:
            await self.disconnect(conn, code=CLOSE_GOING_AWAY, reason="Send failed")
        if dead:
            logger.info("Removed %d dead websocket connection(s)", len(dead))
        return len(targets) - len(dead)

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send ``message`` to every open connection; returns the number delivered."""
        targets = [c for c in self._all() if c.state == ConnectionState.OPEN]
        return await self._send_many(targets, message)

    async def broadcast_event(self, entry: AuditEntry) -> int:
        delivered = await self.broadcast(make_message(MSG_AUDIT_NEW, entry.to_public()))
        logger.debug("Broadcast audit log id=%s recipients=%d", entry.id, delivered)
        return delivered

    async def send_heartbeat(self) -> int:
        return await self.broadcast(make_message(MSG_HEARTBEAT, {"connections": self.total_connections}))

    async def broadcast_agent_status(self, agent_id: str, status: str, **extra: Any) -> int:
        payload = {"agentId": agent_id, "status": status}
        payload.update(extra)
        return await self.broadcast(make_message(MSG_AGENT_STATUS, payload))

    async def broadcast_session_activity(self, session_id: str, activity: Dict[str, Any]) -> int:
        return await self.broadcast(make_message(MSG_SESSION_ACTIVITY, {"sessionId": session_id, **activity}))

    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> int:
        targets = [c for c in self._connections.get(user_id, ()) if c.state == ConnectionState.OPEN]
        return await self._send_many(targets, message)

    # ----- liveness -----

    async def check_liveness(self) -> int:
        """
        Ping every open connection. Peers whose send fails or times out are
        terminated; clients are not expected to answer. Returns the number terminated.
        """
        targets = [c for c in self._all() if c.state == ConnectionState.OPEN]
        delivered = await self._send_many(targets, make_message(MSG_PING))
        return len(targets) - delivered

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.check_liveness()
                await self.send_heartbeat()
            except Exception:
                logger.exception("WebSocket heartbeat iteration failed")

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info("WebSocket stream started heartbeat_interval=%ss", self.heartbeat_interval)

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for conn in self._all():
            await self.disconnect(conn, code=CLOSE_GOING_AWAY, reason="Server shutting down")
        logger.info("WebSocket stream stopped")
