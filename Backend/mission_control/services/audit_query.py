"""Filter and pagination semantics shared by the audit store backends.

Filters are AND-combined. Results are always newest first; callers hand in
entries already in that order and ``paginate`` slices them.
"""

from __future__ import annotations

from typing import Iterable, List

from sqlalchemy import or_

from mission_control.models.audit_log import AuditLog
from mission_control.schemas.audit_log import AuditEntry, AuditLogQuery, AuditQueryResult


def matches(entry: AuditEntry, q: AuditLogQuery) -> bool:
    """True if ``entry`` passes every filter set on ``q``."""
    if q.user_id and entry.user_id != q.user_id:
        return False
    if q.action and entry.action not in q.action:
        return False
    if q.result and entry.result != q.result:
        return False
    if q.start_date and entry.timestamp < q.start_date:
        return False
    if q.end_date and entry.timestamp > q.end_date:
        return False
    if q.search:
        needle = q.search.lower()
        haystack = f"{entry.resource}\n{entry.details or ''}".lower()
        if needle not in haystack:
            return False
    return True


def paginate(newest_first: Iterable[AuditEntry], q: AuditLogQuery) -> AuditQueryResult:
    """Filter an already newest-first sequence and cut one page out of it."""
    filtered: List[AuditEntry] = [e for e in newest_first if matches(e, q)]
    total = len(filtered)
    page = filtered[q.offset:q.offset + q.limit]
    return AuditQueryResult(
        logs=page,
        count=len(page),
        total=total,
        has_more=q.offset + len(page) < total,
    )


def apply_sql_filters(stmt, q: AuditLogQuery):
    """Same filters as ``matches``, expressed as SQLAlchemy where-clauses."""
    if q.user_id:
        stmt = stmt.where(AuditLog.user_id == q.user_id)
    if q.action:
        stmt = stmt.where(AuditLog.action.in_([a.value for a in q.action]))
    if q.result:
        stmt = stmt.where(AuditLog.result == q.result.value)
    if q.start_date:
        stmt = stmt.where(AuditLog.timestamp >= q.start_date)
    if q.end_date:
        stmt = stmt.where(AuditLog.timestamp <= q.end_date)
    if q.search:
        # literal substring; % and _ typed by the user are not wildcards
        stmt = stmt.where(or_(
            AuditLog.resource.icontains(q.search, autoescape=True),
            AuditLog.details.icontains(q.search, autoescape=True),
        ))
    return stmt
