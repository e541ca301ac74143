"""
Audit event store.

Append-only container of audit entries with filtered queries and
retention-based bulk cleanup. Two backends share the same contract:

- JsonFileAuditStore: entries live in memory and are persisted as one JSON
  array. Writes are debounced: each append (re)arms a short timer and the whole
  array is written once the store has been quiet for ``flush_delay`` seconds,
  or immediately once ``max_buffered`` appends are pending. The file is replaced
  atomically (temp file + rename). Appends made within ``flush_delay`` of a
  process crash are lost; this window is accepted.
- SqlAuditStore: rows in the ``audit_logs`` table; an autoincrement ``seq``
  column records insertion order.

No method updates or deletes a single entry.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from mission_control.config import Settings
from mission_control.models.audit_log import AuditLog
from mission_control.schemas.audit_log import (
    AuditEntry,
    AuditEntryCreate,
    AuditLogQuery,
    AuditQueryResult,
)
from mission_control.services.audit_query import apply_sql_filters, paginate

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
MEMORY_PATH = ":memory:"
REDACTED = "[REDACTED]"

# Order matters: whole credentials first, then keyword: value pairs.
_SENSITIVE_PATTERNS = [
    re.compile(r"bearer\s+[a-zA-Z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+(?:\.[a-zA-Z0-9_-]*)?"),
    re.compile(r"\b[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]{10,}\b"),
    re.compile(r"password[:\s=]*[^\s,}]*", re.IGNORECASE),
    re.compile(r"token[:\s=]*[^\s,}]*", re.IGNORECASE),
    re.compile(r"secret[:\s=]*[^\s,}]*", re.IGNORECASE),
    re.compile(r"api[_-]?key[:\s=]*[^\s,}]*", re.IGNORECASE),
]


class AuditStorageError(Exception):
    """The backing store could not complete a read or write."""


def sanitize_details(details: Optional[str]) -> Optional[str]:
    """Replace credential-like substrings with a redaction marker."""
    if not details:
        return details
    sanitized = details
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(REDACTED, sanitized)
    return sanitized


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditStore(abc.ABC):
    backend: str = ""

    def __init__(self):
        self._last_timestamp: Optional[datetime] = None

    def _next_timestamp(self) -> datetime:
        # never step backwards, even if the wall clock does
        now = _utc_now()
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def _build_entry(self, data: AuditEntryCreate) -> AuditEntry:
        if data.timestamp is not None:
            # backfilled entries still move the floor for later assigned timestamps
            if self._last_timestamp is None or data.timestamp > self._last_timestamp:
                self._last_timestamp = data.timestamp
            timestamp = data.timestamp
        else:
            timestamp = self._next_timestamp()
        return AuditEntry(
            id=data.id or str(uuid.uuid4()),
            timestamp=timestamp,
            user_id=data.user_id,
            username=data.username,
            action=data.action,
            resource=data.resource,
            result=data.result,
            details=sanitize_details(data.details),
            ip_address=data.ip_address,
            user_agent=data.user_agent,
        )

    @abc.abstractmethod
    async def append(self, data: AuditEntryCreate) -> AuditEntry:
        """Store ``data`` as the newest entry and return the stored entry."""

    @abc.abstractmethod
    async def query(self, q: AuditLogQuery) -> AuditQueryResult:
        """Filtered, newest-first page of entries."""

    @abc.abstractmethod
    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Remove entries older than ``retention_days``; return how many were removed."""

    @abc.abstractmethod
    async def clear(self) -> None:
        """Remove everything. Test and admin tooling only."""

    @abc.abstractmethod
    async def count(self) -> int:
        ...

    async def close(self) -> None:
        return None


class JsonFileAuditStore(AuditStore):
    backend = "file"

    def __init__(
        self,
        storage_path: str = MEMORY_PATH,
        flush_delay: float = 0.1,
        max_buffered: int = 500,
    ):
        super().__init__()
        self.storage_path = storage_path
        self.is_memory = storage_path == MEMORY_PATH
        self.flush_delay = flush_delay
        self.max_buffered = max_buffered

        self._entries: List[AuditEntry] = []  # oldest first
        self._lock = threading.RLock()
        self._write_lock = asyncio.Lock()
        self._pending = 0
        self._dirty = False
        self._flush_timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: Set[asyncio.Task] = set()

        if not self.is_memory:
            self._load_from_disk()

    async def append(self, data: AuditEntryCreate) -> AuditEntry:
        with self._lock:
            entry = self._build_entry(data)
            self._entries.append(entry)
            self._pending += 1
            self._dirty = True

        if not self.is_memory:
            self._schedule_flush()

        logger.debug("Audit log created id=%s action=%s user_id=%s", entry.id, entry.action.value, entry.user_id)
        return entry

    async def query(self, q: AuditLogQuery) -> AuditQueryResult:
        with self._lock:
            snapshot = list(self._entries)
        return paginate(reversed(snapshot), q)

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = _utc_now() - timedelta(days=retention_days)
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            removed = before - len(self._entries)
            remaining = len(self._entries)
            if removed:
                self._dirty = True

        if removed:
            logger.info(
                "Audit log cleanup completed removed=%d retention_days=%d remaining=%d",
                removed, retention_days, remaining,
            )
            await self.flush()
        return removed

    async def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._dirty = True
        await self.flush()

    async def count(self) -> int:
        with self._lock:
            return len(self._entries)

    async def close(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        await self.flush()

    # ----- persistence -----

    def _schedule_flush(self) -> None:
        loop = asyncio.get_running_loop()
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None

        if self._pending >= self.max_buffered:
            self._start_flush()
        else:
            self._flush_timer = loop.call_later(self.flush_delay, self._start_flush)

    def _start_flush(self) -> None:
        self._flush_timer = None
        task = asyncio.ensure_future(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> None:
        """Write the current entries to disk if anything changed since the last write."""
        if self.is_memory:
            return
        async with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return
                records = [e.to_public() for e in self._entries]
                self._dirty = False
                self._pending = 0
            try:
                await asyncio.to_thread(self._write_to_disk, records)
            except OSError:
                logger.exception("Failed to save audit logs to disk path=%s", self.storage_path)
                with self._lock:
                    self._dirty = True

    def _write_to_disk(self, records: List[Dict[str, Any]]) -> None:
        path = Path(self.storage_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(records, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        logger.debug("Audit logs saved to disk count=%d", len(records))

    def _load_from_disk(self) -> None:
        path = Path(self.storage_path)
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("audit log file must hold a JSON array")
            entries = [AuditEntry.model_validate(r) for r in raw]
        except (OSError, ValueError) as e:
            backup = path.with_name(path.name + ".corrupt")
            logger.warning("Failed to load audit logs from disk, moving to %s: %s", backup, e)
            try:
                os.replace(path, backup)
            except OSError:
                logger.exception("Could not move unreadable audit log file aside")
            return

        self._entries = entries
        if entries:
            self._last_timestamp = max(e.timestamp for e in entries)
        logger.info("Audit logs loaded from disk count=%d", len(entries))


class SqlAuditStore(AuditStore):
    backend = "database"

    def __init__(self, session_factory: sessionmaker):
        super().__init__()
        self._session_factory = session_factory
        # serialises timestamp assignment with the insert so seq and timestamp agree
        self._lock = threading.Lock()

    @staticmethod
    def _row_to_entry(row: AuditLog) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            timestamp=row.timestamp,
            user_id=row.user_id,
            username=row.username,
            action=row.action,
            resource=row.resource,
            result=row.result,
            details=row.details,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
        )

    async def append(self, data: AuditEntryCreate) -> AuditEntry:
        entry = await run_in_threadpool(self._insert, data)
        logger.debug("Audit log created id=%s action=%s user_id=%s", entry.id, entry.action.value, entry.user_id)
        return entry

    def _insert(self, data: AuditEntryCreate) -> AuditEntry:
        with self._lock:
            session = self._session_factory()
            try:
                if self._last_timestamp is None:
                    latest = session.execute(select(func.max(AuditLog.timestamp))).scalar_one_or_none()
                    if latest is not None:
                        self._last_timestamp = latest if latest.tzinfo else latest.replace(tzinfo=timezone.utc)

                entry = self._build_entry(data)
                session.add(AuditLog(
                    id=entry.id,
                    timestamp=entry.timestamp,
                    user_id=entry.user_id,
                    username=entry.username,
                    action=entry.action.value,
                    resource=entry.resource,
                    result=entry.result.value,
                    details=entry.details,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                ))
                session.commit()
                return entry
            except SQLAlchemyError as e:
                session.rollback()
                raise AuditStorageError("Failed to store audit log") from e
            finally:
                session.close()

    async def query(self, q: AuditLogQuery) -> AuditQueryResult:
        return await run_in_threadpool(self._query, q)

    def _query(self, q: AuditLogQuery) -> AuditQueryResult:
        session = self._session_factory()
        try:
            stmt = apply_sql_filters(select(AuditLog), q)
            total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
            rows = session.execute(
                stmt.order_by(AuditLog.seq.desc()).offset(q.offset).limit(q.limit)
            ).scalars().all()
        except SQLAlchemyError as e:
            raise AuditStorageError("Failed to query audit logs") from e
        finally:
            session.close()

        logs = [self._row_to_entry(r) for r in rows]
        return AuditQueryResult(
            logs=logs,
            count=len(logs),
            total=total,
            has_more=q.offset + len(logs) < total,
        )

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = _utc_now() - timedelta(days=retention_days)
        removed = await run_in_threadpool(self._delete_where, AuditLog.timestamp < cutoff)
        if removed:
            logger.info("Audit log cleanup completed removed=%d retention_days=%d", removed, retention_days)
        return removed

    async def clear(self) -> None:
        await run_in_threadpool(self._delete_where, None)

    def _delete_where(self, condition) -> int:
        session = self._session_factory()
        try:
            stmt = delete(AuditLog)
            if condition is not None:
                stmt = stmt.where(condition)
            res = session.execute(stmt)
            session.commit()
            return res.rowcount or 0
        except SQLAlchemyError as e:
            session.rollback()
            raise AuditStorageError("Failed to delete audit logs") from e
        finally:
            session.close()

    async def count(self) -> int:
        return await run_in_threadpool(self._count)

    def _count(self) -> int:
        session = self._session_factory()
        try:
            return session.execute(select(func.count(AuditLog.seq))).scalar_one()
        except SQLAlchemyError as e:
            raise AuditStorageError("Failed to count audit logs") from e
        finally:
            session.close()


def create_audit_store(settings: Settings, session_factory: Optional[sessionmaker] = None) -> AuditStore:
    """Build the store selected by ``settings.audit_backend``."""
    if settings.audit_backend == "database":
        if session_factory is None:
            raise ValueError("audit_backend=database requires a session factory")
        return SqlAuditStore(session_factory)
    if settings.audit_backend == "file":
        return JsonFileAuditStore(
            storage_path=settings.audit_log_path,
            flush_delay=settings.audit_flush_delay_seconds,
            max_buffered=settings.audit_max_buffered_writes,
        )
    raise ValueError(f"Unknown audit backend: {settings.audit_backend!r}")
