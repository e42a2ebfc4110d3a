import asyncio

import pytest

from conftest import next_event
from offsync.services.config import SyncConfig
from offsync.services.errors import (
    NotOnline,
    PermanentRemoteError,
    StorageError,
    SyncAlreadyRunning,
    TransientNetworkError,
)
from offsync.services.models import SyncStatus
from offsync.services.sync_manager import SyncCoordinator


def collect(channel):
    events = []
    channel.subscribe(events.append)
    return events


@pytest.mark.asyncio
async def test_reconnect_drains_in_priority_order_with_retries(queue, remote, monitor, coordinator):
    """P1 high, P2/P3 normal; P2 fails transiently twice before succeeding."""
    await queue.enqueue("sheet", "P1", {"n": 1}, "high")
    await queue.enqueue("sheet", "P2", {"n": 2}, "normal")
    await queue.enqueue("sheet", "P3", {"n": 3}, "normal")
    remote.script("P2", TransientNetworkError("timeout"), TransientNetworkError("timeout"))

    coordinator.arm_reconnect_trigger()
    completed = next_event(coordinator.events.sync_completed)
    monitor.report(True)
    result = await asyncio.wait_for(completed, timeout=5)

    assert remote.actions == ["P1", "P2", "P2", "P3", "P2"]
    assert result.success == 3
    assert result.failure == 2
    assert result.remaining == 0
    assert await queue.size() == 0
    assert await queue.list_failed() == []


@pytest.mark.asyncio
async def test_requests_carry_record_id_as_sync_id(queue, remote, monitor, coordinator, clock):
    record_id = await queue.enqueue("sheet", "submitInventory", {"sku": "A1"})
    monitor.report(True)

    await coordinator.manual_sync()

    assert remote.sent == [{
        "action": "submitInventory",
        "data": {"sku": "A1"},
        "timestamp": clock(),
        "syncId": record_id,
        "source": "mobile-app",
    }]


@pytest.mark.asyncio
async def test_always_transient_record_exhausts_retries(queue, remote, monitor, coordinator, fake_sleep):
    record_id = await queue.enqueue("sheet", "flaky", {})
    remote.always("flaky", TransientNetworkError("HTTP 503"))
    failed = collect(coordinator.events.item_sync_failed)
    retries = collect(coordinator.events.item_retry_scheduled)
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert remote.actions == ["flaky", "flaky", "flaky"]
    assert [r.delay_ms for r in retries] == [1000, 2000]
    assert fake_sleep.calls == [1.0, 2.0]
    assert [event.record.id for event in failed] == [record_id]
    assert failed[0].record.status == SyncStatus.FAILED
    assert (stats.success, stats.failure, stats.remaining) == (0, 3, 0)
    assert [letter["id"] for letter in await queue.list_failed()] == [record_id]


@pytest.mark.asyncio
async def test_remote_rejection_fails_immediately(queue, remote, monitor, coordinator):
    rejected = await queue.enqueue("sheet", "bad", {})
    await queue.enqueue("sheet", "good", {})
    remote.script("bad", {"success": False, "error": "Invalid row"})
    failed = collect(coordinator.events.item_sync_failed)
    synced = collect(coordinator.events.item_synced)
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert remote.actions == ["bad", "good"]
    assert [event.record.id for event in failed] == [rejected]
    assert isinstance(failed[0].error, PermanentRemoteError)
    assert len(synced) == 1
    assert (stats.success, stats.failure, stats.remaining) == (1, 1, 0)
    assert (await queue.list_failed())[0]["last_error"] == "Invalid row"


@pytest.mark.asyncio
async def test_transport_rejection_fails_immediately(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "forbidden", {})
    remote.script("forbidden", PermanentRemoteError("HTTP 403", status=403))
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert remote.actions == ["forbidden"]
    assert stats.failure == 1
    assert await queue.size() == 0


@pytest.mark.asyncio
async def test_unexpected_transport_errors_are_retried(queue, remote, monitor, coordinator):
    record_id = await queue.enqueue("sheet", "boom", {})
    remote.script("boom", OSError("connection reset"))
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert remote.actions == ["boom", "boom"]
    assert stats.success == 1
    assert await queue.get(record_id) is None


@pytest.mark.asyncio
async def test_lifecycle_events(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "a", {})
    await queue.enqueue("sheet", "b", {})
    started = collect(coordinator.events.sync_started)
    synced = collect(coordinator.events.item_synced)
    completed = collect(coordinator.events.sync_completed)
    monitor.report(True)

    await coordinator.manual_sync()

    assert [event.queue_length for event in started] == [2]
    assert [event.record.action for event in synced] == ["a", "b"]
    assert all(event.record.status == SyncStatus.SYNCED for event in synced)
    assert [(e.success, e.failure, e.remaining) for e in completed] == [(2, 0, 0)]

    logs = [log["event_type"] for log in await queue.db.get_recent_logs()]
    assert logs[:2] == ["sync_complete", "sync_start"]


@pytest.mark.asyncio
async def test_manual_sync_requires_connectivity(queue, remote, coordinator):
    await queue.enqueue("sheet", "a", {})

    with pytest.raises(NotOnline):
        await coordinator.manual_sync()
    assert remote.sent == []


@pytest.mark.asyncio
async def test_concurrent_sync_is_rejected(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "slow", {})
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_send(endpoint, request):
        entered.set()
        await release.wait()
        return {"success": True}

    remote.send = slow_send
    monitor.report(True)

    first = asyncio.create_task(coordinator.manual_sync())
    await asyncio.wait_for(entered.wait(), timeout=5)

    with pytest.raises(SyncAlreadyRunning):
        await coordinator.manual_sync()
    assert await coordinator.tick() is None
    assert await coordinator.trigger_sync() is None

    release.set()
    stats = await first
    assert stats.success == 1
    assert not coordinator.is_syncing


@pytest.mark.asyncio
async def test_tick_is_a_noop_while_offline(queue, remote, coordinator):
    await queue.enqueue("sheet", "a", {})

    assert await coordinator.tick() is None
    assert remote.sent == []
    assert await queue.pending_count() == 1


@pytest.mark.asyncio
async def test_tick_drains_when_online(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "a", {})
    monitor.report(True)

    stats = await coordinator.tick()

    assert stats.success == 1
    assert coordinator.last_stats is stats


@pytest.mark.asyncio
async def test_reconnect_trigger_is_armed_once(monitor, coordinator):
    coordinator.arm_reconnect_trigger()
    coordinator.arm_reconnect_trigger()
    assert len(monitor.events.restored) == 1


@pytest.mark.asyncio
async def test_connectivity_loss_stops_the_pass(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "first", {})
    await queue.enqueue("sheet", "second", {})
    await queue.enqueue("sheet", "third", {})
    original_send = remote.send

    async def send_then_drop(endpoint, request):
        response = await original_send(endpoint, request)
        monitor.report(False)
        return response

    remote.send = send_then_drop
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert remote.actions == ["first"]
    assert (stats.success, stats.remaining) == (1, 2)


@pytest.mark.asyncio
async def test_long_backoff_is_deferred_to_the_next_pass(db, remote, monitor, clock, fake_sleep, tmp_path):
    from offsync.services.mutation_queue import MutationQueue

    config = SyncConfig(db_path=str(tmp_path / "offsync.db"), max_pass_wait_ms=1500, max_retries=5)
    queue = MutationQueue(db, config, clock)
    coordinator = SyncCoordinator(queue, remote, monitor, config, clock=clock, sleep=fake_sleep)
    record_id = await queue.enqueue("sheet", "flaky", {})
    remote.always("flaky", TransientNetworkError("timeout"))
    monitor.report(True)

    stats = await coordinator.manual_sync()

    record = await queue.get(record_id)
    assert remote.actions == ["flaky", "flaky"]
    assert record.status == SyncStatus.PENDING
    assert record.retry_count == 2
    assert stats.remaining == 1


@pytest.mark.asyncio
async def test_request_timeout_is_transient(db, monitor, clock, fake_sleep, tmp_path):
    from conftest import FakeRemote
    from offsync.services.mutation_queue import MutationQueue

    config = SyncConfig(db_path=str(tmp_path / "offsync.db"), request_timeout_ms=20, max_retries=1)
    queue = MutationQueue(db, config, clock)
    remote = FakeRemote()

    async def hang(endpoint, request):
        await asyncio.Event().wait()

    remote.send = hang
    coordinator = SyncCoordinator(queue, remote, monitor, config, clock=clock, sleep=fake_sleep)
    failed = collect(coordinator.events.item_sync_failed)
    await queue.enqueue("sheet", "slow", {})
    monitor.report(True)

    stats = await coordinator.manual_sync()

    assert stats.failure == 1
    assert isinstance(failed[0].error, TransientNetworkError)


def fail_once(monkeypatch, target, name):
    """Make target.name raise StorageError on its first call only."""
    original = getattr(target, name)
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StorageError("disk I/O error")
        return await original(*args, **kwargs)

    monkeypatch.setattr(target, name, flaky)
    return calls


@pytest.mark.asyncio
async def test_storage_failure_aborts_pass_and_requeues_record(queue, remote, monitor, coordinator, monkeypatch):
    first = await queue.enqueue("sheet", "a", {})
    await queue.enqueue("sheet", "b", {})
    fail_once(monkeypatch, queue.db, "delete_mutation")
    monitor.report(True)

    with pytest.raises(StorageError):
        await coordinator.manual_sync()

    assert not coordinator.is_syncing
    assert remote.actions == ["a"]
    assert (await queue.get(first)).status == SyncStatus.PENDING
    assert await queue.pending_count() == 2
    logs = [log["event_type"] for log in await queue.db.get_recent_logs()]
    assert logs[0] == "sync_error"

    stats = await coordinator.manual_sync()

    assert remote.actions == ["a", "a", "b"]
    assert (stats.success, stats.remaining) == (2, 0)
    assert await queue.size() == 0


@pytest.mark.asyncio
async def test_record_stuck_syncing_is_recovered_by_next_drain(queue, remote, monitor, coordinator, monkeypatch):
    record_id = await queue.enqueue("sheet", "a", {})
    fail_once(monkeypatch, queue.db, "delete_mutation")
    # The cleanup after the abort fails too, leaving the record 'syncing'
    reset_calls = []
    original_reset = queue.db.reset_syncing_mutations

    async def reset(*args):
        reset_calls.append(args)
        if len(reset_calls) == 2:
            raise StorageError("disk I/O error")
        return await original_reset()

    monkeypatch.setattr(queue.db, "reset_syncing_mutations", reset)
    monitor.report(True)

    with pytest.raises(StorageError):
        await coordinator.manual_sync()
    assert (await queue.get(record_id)).status == SyncStatus.SYNCING
    assert not coordinator.is_syncing

    stats = await coordinator.manual_sync()

    assert remote.actions == ["a", "a"]
    assert (stats.success, stats.remaining) == (1, 0)


@pytest.mark.asyncio
async def test_remaining_counts_records_still_syncing(queue, remote, monitor, coordinator):
    await queue.enqueue("sheet", "a", {})
    stuck = await queue.enqueue("sheet", "b", {})
    monitor.report(True)
    original_send = remote.send

    async def send_and_claim(endpoint, request):
        # Another record goes 'syncing' behind the pass's back
        if request["action"] == "a":
            await queue.mark_syncing(stuck)
        return await original_send(endpoint, request)

    remote.send = send_and_claim

    stats = await coordinator.manual_sync()

    assert stats.success == 1
    assert stats.remaining == 1


@pytest.mark.asyncio
async def test_flush_urgent_sends_recent_records_as_beacon(queue, monitor, coordinator, beacon, clock):
    await queue.enqueue("sheet", "old", {})
    clock.advance(10 * 60 * 1000)
    recent = await queue.enqueue("sheet", "recent", {"n": 1})
    monitor.report(True)

    assert await coordinator.flush_urgent() == 1

    assert len(beacon.payloads) == 1
    payload = beacon.payloads[0]
    assert payload["action"] == "syncUrgentData"
    assert [item["syncId"] for item in payload["data"]] == [recent]
    # Records stay queued until a regular drain acknowledges them
    assert await queue.pending_count() == 2


@pytest.mark.asyncio
async def test_flush_urgent_is_skipped_offline(queue, coordinator, beacon):
    await queue.enqueue("sheet", "a", {})
    assert await coordinator.flush_urgent() == 0
    assert beacon.payloads == []


@pytest.mark.asyncio
async def test_get_sync_status(queue, monitor, coordinator):
    await queue.enqueue("sheet", "a", {})
    monitor.report(True)
    await coordinator.manual_sync()

    status = await coordinator.get_sync_status()

    assert status["is_syncing"] is False
    assert status["pending_count"] == 0
    assert status["last_stats"] == {"success": 1, "failure": 0, "remaining": 0}
    assert status["last_sync_logs"][0]["event_type"] == "sync_complete"
