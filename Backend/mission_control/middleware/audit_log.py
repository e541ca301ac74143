"""Audit ingestion: normalise, store and fan out audit events.

Recording an audit event must never break the action being audited, so every
storage failure is logged here and swallowed.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Set, Union
import asyncio
import logging
import threading

from fastapi import HTTPException, Request

from mission_control.schemas.audit_log import (
    AuditAction,
    AuditEntry,
    AuditEntryCreate,
    AuditResult,
    normalize_action,
    normalize_result,
)

logger = logging.getLogger(__name__)


class AuditRecorder:
    """
    Ingestion path in front of an AuditStore.

    - record(): awaitable, returns the stored entry or None on storage failure
    - submit(): fire-and-forget, safe from the event loop or a worker thread
    """

    def __init__(self, store, stream=None):
        self.store = store
        self.stream = stream
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        # FIFO hand-off so subscribers receive entries in append order
        self._broadcast_lock = asyncio.Lock()

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Remember the serving loop so submit() works from sync routes."""
        self._loop = loop or asyncio.get_running_loop()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def record(
        self,
        action: Union[str, AuditAction],
        resource: str,
        result: Union[str, AuditResult],
        details: Optional[str] = None,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        data = AuditEntryCreate(
            user_id=user_id,
            username=username,
            action=normalize_action(action),
            resource=resource,
            result=normalize_result(result),
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        try:
            entry = await self.store.append(data)
        except Exception:
            logger.exception(
                "Failed to store audit log action=%s resource=%s user_id=%s",
                data.action.value, resource, user_id,
            )
            return None

        log_level = logging.WARNING if entry.result == AuditResult.DENIED else logging.INFO
        logger.log(
            log_level,
            "AUDIT action=%s user=%s resource=%s result=%s",
            entry.action.value, entry.username or entry.user_id, entry.resource, entry.result.value,
        )

        if self.stream is not None:
            self._spawn(self._broadcast(entry))
        return entry

    async def _broadcast(self, entry: AuditEntry) -> None:
        async with self._broadcast_lock:
            try:
                await self.stream.broadcast_event(entry)
            except Exception:
                logger.exception("Failed to broadcast audit log id=%s", entry.id)

    def submit(self, *args: Any, **kwargs: Any) -> None:
        """Schedule record(...) without waiting for it. Never raises."""
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None

            if running is not None:
                self._spawn(self.record(*args, **kwargs))
            elif self._loop is not None and not self._loop.is_closed():
                # sync route on a worker thread: hand the task to the serving loop
                self._loop.call_soon_threadsafe(self._spawn_record, args, kwargs)
            else:
                logger.error("Audit event dropped: no event loop available (thread=%s)", threading.current_thread().name)
        except Exception:
            logger.exception("Failed to schedule audit log")

    def _spawn_record(self, args: tuple, kwargs: dict) -> None:
        self._spawn(self.record(*args, **kwargs))

    async def drain(self) -> None:
        """Wait for outstanding record/broadcast tasks (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def audit_log(
    request: Request,
    action: Union[str, AuditAction],
    resource: str,
    result: Union[str, AuditResult],
    details: Optional[str] = None,
    user: Any = None,
) -> None:
    """
    Fire-and-forget audit helper for route handlers.

    The actor is ``user`` when given (anything with id/username, e.g. a User row),
    otherwise the AuthContext the auth dependency left on request.state.
    """
    recorder: Optional[AuditRecorder] = getattr(request.app.state, "audit_recorder", None)
    if recorder is None:
        logger.warning("Audit recorder not configured; dropping action=%s", action)
        return

    user_id = None
    username = None
    if user is not None:
        user_id = str(getattr(user, "id", None) or getattr(user, "user_id", None) or "") or None
        username = getattr(user, "username", None)
    else:
        auth = getattr(request.state, "auth", None)
        if auth is not None:
            user_id = auth.user_id
            username = auth.username

    recorder.submit(
        action=action,
        resource=resource,
        result=result,
        details=details,
        user_id=user_id,
        username=username,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def result_for_status(status_code: int) -> AuditResult:
    if 200 <= status_code < 300:
        return AuditResult.SUCCESS
    if status_code == 403:
        return AuditResult.DENIED
    return AuditResult.FAILURE


def audit_route(action: Union[str, AuditAction], resource: Union[str, Callable[..., str]]):
    """
    Decorator for async route handlers that records one audit entry per call.

    The handler must accept ``request: Request``. ``resource`` may be a string or
    a callable receiving the handler's kwargs (e.g. ``lambda kw: f"agent:{kw['agent_id']}"``).
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request: Optional[Request] = kwargs.get("request")
            target = resource(kwargs) if callable(resource) else resource

            try:
                response = await func(*args, **kwargs)
            except HTTPException as e:
                if request is not None:
                    audit_log(request, action, target, result_for_status(e.status_code), details=str(e.detail))
                raise
            except Exception as e:
                if request is not None:
                    audit_log(request, action, target, AuditResult.FAILURE, details=str(e))
                raise

            if request is not None:
                status_code = getattr(response, "status_code", 200)
                audit_log(request, action, target, result_for_status(status_code))
            return response
        return wrapper
    return decorator
