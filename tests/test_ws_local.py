import asyncio
import json

import pytest

from offsync.network.ws_local import LocalBridge
from offsync.services.errors import StorageError


class FakeSocket:
    """Stands in for a websockets connection: replays messages, records replies."""

    remote_address = ("127.0.0.1", 50000)

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.sent = []
        self.received = asyncio.Event()

    async def send(self, message):
        self.sent.append(json.loads(message))
        self.received.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.messages:
            raise StopAsyncIteration
        return self.messages.pop(0)


@pytest.fixture
def bridge(engine) -> LocalBridge:
    return LocalBridge(engine)


@pytest.mark.asyncio
async def test_ping(bridge):
    assert await bridge.dispatch("ping", {"timestamp": 42}) == {"type": "pong", "timestamp": 42}


@pytest.mark.asyncio
async def test_enqueue_while_offline_is_stored_locally(bridge, engine):
    reply = await bridge.dispatch("enqueue", {
        "endpoint": "sheet", "action": "submitInventory", "payload": {"sku": "A1"}, "priority": "high",
    })

    assert reply["type"] == "enqueue_ack"
    assert reply["status"] == "stored_locally"
    assert await engine.queue.get(reply["id"]) is not None
    assert await bridge.dispatch("get_pending", {}) == {"type": "pending_info", "count": 1}


@pytest.mark.asyncio
async def test_enqueue_while_online_is_sent(bridge, engine, remote):
    engine.monitor.report(True)

    reply = await bridge.dispatch("enqueue", {
        "endpoint": "sheet", "action": "submitInventory", "payload": {"sku": "A1"},
    })

    assert reply["status"] == "sent"
    assert remote.actions[-1] == "submitInventory"


@pytest.mark.asyncio
async def test_invalid_enqueue(bridge):
    reply = await bridge.dispatch("enqueue", {"endpoint": "sheet", "payload": {}})
    assert reply["type"] == "enqueue_error"
    assert reply["code"] == "INVALID"


@pytest.mark.asyncio
async def test_sync_errors(bridge, engine):
    reply = await bridge.dispatch("sync", {})
    assert reply["code"] == "NOT_ONLINE"

    engine.coordinator.is_syncing = True
    engine.monitor.report(True)
    try:
        reply = await bridge.dispatch("sync", {})
    finally:
        engine.coordinator.is_syncing = False
    assert reply["code"] == "SYNC_RUNNING"


@pytest.mark.asyncio
async def test_get_status(bridge):
    reply = await bridge.dispatch("get_status", {})
    assert reply["type"] == "status"
    assert reply["data"]["network"]["online"] is False


@pytest.mark.asyncio
async def test_unknown_message(bridge):
    reply = await bridge.dispatch("reboot", {})
    assert reply["type"] == "error"


@pytest.mark.asyncio
async def test_handler_sends_status_then_replies(bridge):
    socket = FakeSocket(['{"type": "ping", "timestamp": 1}', "not json"])

    await bridge.handler(socket)

    assert [message["type"] for message in socket.sent] == ["status", "pong", "error"]
    assert socket.sent[0]["data"]["online"] is False
    assert bridge.clients == set()


@pytest.mark.asyncio
async def test_connectivity_change_is_broadcast(bridge, engine):
    socket = FakeSocket()
    bridge.clients.add(socket)

    engine.monitor.report(True)
    assert len(bridge._tasks) == 1
    await asyncio.wait_for(socket.received.wait(), timeout=5)

    assert socket.sent[0]["type"] == "status"


@pytest.mark.asyncio
async def test_broadcast_tasks_are_released_when_done(bridge, engine):
    socket = FakeSocket()
    bridge.clients.add(socket)
    # Keep the reconnect drain from scheduling a second broadcast
    engine.coordinator.is_syncing = True

    engine.monitor.report(True)
    tasks = list(bridge._tasks)
    await asyncio.gather(*tasks)
    await asyncio.sleep(0)
    engine.coordinator.is_syncing = False

    assert len(tasks) == 1
    assert bridge._tasks == set()
    assert socket.sent[0]["type"] == "status"


@pytest.mark.asyncio
async def test_broadcast_survives_storage_failure(bridge, engine, monkeypatch):
    socket = FakeSocket()
    bridge.clients.add(socket)

    async def broken_count():
        raise StorageError("database is locked")

    monkeypatch.setattr(engine.queue, "pending_count", broken_count)

    await bridge.broadcast_status()

    assert socket.sent == []
