"""
Audit log routes (admin only).

GET  /api/audit-logs          filtered, paginated history (newest first)
GET  /api/audit-logs/stats    last-24h totals by action and result
POST /api/audit-logs/cleanup  run retention cleanup now
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from mission_control.schemas.audit_log import (
    AuditCleanupResult,
    AuditLogPage,
    AuditLogQuery,
    AuditLogResponse,
    AuditResult,
    MAX_QUERY_LIMIT,
)
from mission_control.middleware.auth_middleware import AuthContext, require_admin
from mission_control.utils.errors import ApiError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit-logs", tags=["Audit Logs"])


def _validation_details(e: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
    )


@router.get("", response_model=AuditLogResponse, response_model_by_alias=True)
async def get_audit_logs(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[str] = Query(None, description="One action or a comma-separated list"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    result: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    auth: AuthContext = Depends(require_admin),
):
    """Query audit logs (admin only)."""
    params = {
        "userId": user_id,
        "action": action,
        "startDate": start_date,
        "endDate": end_date,
        "result": result,
        "search": search,
        "limit": limit,
        "offset": offset,
    }
    try:
        q = AuditLogQuery.model_validate({k: v for k, v in params.items() if v not in (None, "")})
    except ValidationError as e:
        raise ApiError(400, "VALIDATION_ERROR", "Invalid query parameters", _validation_details(e))

    store = request.app.state.audit_store
    try:
        page = await store.query(q)
    except Exception as e:
        logger.exception("Failed to query audit logs")
        raise ApiError(500, "QUERY_FAILED", "Failed to query audit logs", str(e))

    logger.info(
        "Admin queried audit logs admin_id=%s count=%d total=%d",
        auth.user_id, page.count, page.total,
    )
    return AuditLogResponse(
        data=AuditLogPage(
            logs=[entry.to_public() for entry in page.logs],
            count=page.count,
            total=page.total,
            has_more=page.has_more,
        )
    )


@router.get("/stats")
async def get_audit_stats(
    request: Request,
    auth: AuthContext = Depends(require_admin),
):
    """Totals for the last 24 hours, by action and by result."""
    store = request.app.state.audit_store
    # fixed window so appends during paging cannot shift the pages
    until = datetime.now(timezone.utc)
    since = until - timedelta(hours=24)

    by_action: Dict[str, int] = {}
    by_result: Dict[str, int] = {r.value: 0 for r in AuditResult}
    total = 0
    try:
        offset = 0
        while True:
            page = await store.query(
                AuditLogQuery(start_date=since, end_date=until, limit=MAX_QUERY_LIMIT, offset=offset)
            )
            for entry in page.logs:
                total += 1
                by_action[entry.action.value] = by_action.get(entry.action.value, 0) + 1
                by_result[entry.result.value] += 1
            if not page.has_more:
                break
            offset += page.count
    except Exception as e:
        logger.exception("Failed to get audit log stats")
        raise ApiError(500, "STATS_FAILED", "Failed to get audit log statistics", str(e))

    logger.info("Admin retrieved audit log stats admin_id=%s", auth.user_id)
    return {
        "success": True,
        "data": {
            "last24Hours": {
                "total": total,
                "byAction": by_action,
                "byResult": by_result,
            }
        },
    }


@router.post("/cleanup")
async def cleanup_audit_logs(
    request: Request,
    retention_days: Optional[int] = Query(None, alias="retentionDays", ge=1),
    auth: AuthContext = Depends(require_admin),
):
    """Remove entries older than the retention window (default from settings)."""
    days = retention_days or request.app.state.settings.audit_retention_days
    store = request.app.state.audit_store
    try:
        removed = await store.cleanup(days)
    except Exception as e:
        logger.exception("Audit log cleanup failed")
        raise ApiError(500, "CLEANUP_FAILED", "Failed to clean up audit logs", str(e))

    logger.info("Admin ran audit cleanup admin_id=%s removed=%d retention_days=%d", auth.user_id, removed, days)
    return {
        "success": True,
        "data": AuditCleanupResult(removed=removed, retention_days=days).model_dump(by_alias=True),
    }
