import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mission_control.schemas.audit_log import AuditAction, AuditEntryCreate, AuditResult
from mission_control.services.audit_store import JsonFileAuditStore
from mission_control.services.retention import RetentionScheduler


def _old_event(days):
    return AuditEntryCreate(
        action=AuditAction.API_CALL,
        resource="api",
        result=AuditResult.SUCCESS,
        timestamp=datetime.now(timezone.utc) - timedelta(days=days),
    )


class FlakyStore:
    def __init__(self):
        self.calls = 0

    async def cleanup(self, retention_days):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("locked")
        return 0


@pytest.mark.asyncio
async def test_run_once_applies_retention():
    store = JsonFileAuditStore(":memory:")
    await store.append(_old_event(45))
    await store.append(_old_event(5))

    scheduler = RetentionScheduler(store, retention_days=30, interval_seconds=0)

    assert await scheduler.run_once() == 1
    assert await scheduler.run_once() == 0
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_loop_keeps_running_after_errors():
    store = FlakyStore()
    scheduler = RetentionScheduler(store, retention_days=30, interval_seconds=0.01)

    scheduler.start()
    for _ in range(100):
        await asyncio.sleep(0.01)
        if store.calls >= 3:
            break
    await scheduler.stop()

    assert store.calls >= 3


@pytest.mark.asyncio
async def test_zero_interval_disables_scheduler():
    scheduler = RetentionScheduler(FlakyStore(), interval_seconds=0)
    scheduler.start()
    assert scheduler._task is None
    await scheduler.stop()
