import asyncio
import threading

import pytest

from mission_control.middleware.audit_log import AuditRecorder, result_for_status
from mission_control.schemas.audit_log import AuditAction, AuditLogQuery, AuditResult
from mission_control.services.audit_store import AuditStorageError, JsonFileAuditStore


class FailingStore:
    backend = "failing"

    def __init__(self):
        self.calls = 0

    async def append(self, data):
        self.calls += 1
        raise AuditStorageError("disk on fire")


class RecordingStream:
    def __init__(self):
        self.events = []

    async def broadcast_event(self, entry):
        self.events.append(entry)
        return 1


@pytest.mark.asyncio
async def test_record_stores_and_broadcasts():
    store = JsonFileAuditStore(":memory:")
    stream = RecordingStream()
    recorder = AuditRecorder(store, stream)

    entry = await recorder.record(AuditAction.LOGIN, "auth", AuditResult.SUCCESS, user_id="u-1", username="alice")
    await recorder.drain()

    assert entry is not None
    assert stream.events == [entry]
    page = await store.query(AuditLogQuery())
    assert page.logs[0].id == entry.id


@pytest.mark.asyncio
async def test_record_normalises_unknown_action_and_result():
    recorder = AuditRecorder(JsonFileAuditStore(":memory:"))

    entry = await recorder.record("user.teleported", "user:1", "pending")

    assert entry.action == AuditAction.UNKNOWN
    assert entry.result == AuditResult.FAILURE


@pytest.mark.asyncio
async def test_record_swallows_storage_failure():
    store = FailingStore()
    stream = RecordingStream()
    recorder = AuditRecorder(store, stream)

    assert await recorder.record(AuditAction.LOGIN, "auth", AuditResult.SUCCESS) is None
    await recorder.drain()
    assert store.calls == 1
    assert stream.events == []


@pytest.mark.asyncio
async def test_submit_never_raises_and_runs_detached():
    store = FailingStore()
    recorder = AuditRecorder(store)

    assert recorder.submit(AuditAction.LOGIN, "auth", AuditResult.SUCCESS) is None
    await recorder.drain()
    assert store.calls == 1


@pytest.mark.asyncio
async def test_submit_from_worker_thread_uses_bound_loop():
    store = JsonFileAuditStore(":memory:")
    recorder = AuditRecorder(store)
    recorder.bind_loop()

    worker = threading.Thread(
        target=recorder.submit,
        kwargs={"action": AuditAction.AGENT_STOP, "resource": "agent:a", "result": AuditResult.SUCCESS},
    )
    worker.start()
    worker.join()

    for _ in range(50):
        await asyncio.sleep(0.01)
        await recorder.drain()
        if await store.count():
            break
    assert await store.count() == 1


def test_submit_without_any_loop_drops_event():
    recorder = AuditRecorder(FailingStore())
    recorder.submit(AuditAction.LOGIN, "auth", AuditResult.SUCCESS)


@pytest.mark.asyncio
async def test_broadcasts_follow_append_order():
    store = JsonFileAuditStore(":memory:")
    stream = RecordingStream()
    recorder = AuditRecorder(store, stream)

    for i in range(10):
        recorder.submit(AuditAction.API_CALL, f"r{i}", AuditResult.SUCCESS)
    await recorder.drain()

    assert [e.resource for e in stream.events] == [f"r{i}" for i in range(10)]


@pytest.mark.parametrize("status, expected", [
    (200, AuditResult.SUCCESS),
    (201, AuditResult.SUCCESS),
    (403, AuditResult.DENIED),
    (401, AuditResult.FAILURE),
    (504, AuditResult.FAILURE),
])
def test_result_for_status(status, expected):
    assert result_for_status(status) == expected
