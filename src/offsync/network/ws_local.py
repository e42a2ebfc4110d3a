"""
ws_local.py - Local WebSocket Bridge for UI adapters

Lets local front-ends queue writes and watch sync state without talking
to the engine in-process. Writes made while offline are stored in the
durable mutation queue; status is pushed to every client on connectivity
transitions and after each drain pass.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Set

import websockets

from ..services.engine import OfflineEngine
from ..services.errors import (
    LockContention,
    NotOnline,
    PermanentRemoteError,
    StorageError,
    StorageQuotaExceeded,
    ValidationError,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("LocalBridge")


class LocalBridge:
    """WebSocket front door to an OfflineEngine."""

    def __init__(self, engine: OfflineEngine):
        self.engine = engine
        self.clients: Set[Any] = set()
        self._tasks: Set[asyncio.Task] = set()

        engine.monitor.events.restored.subscribe(lambda state: self._schedule_broadcast())
        engine.monitor.events.lost.subscribe(lambda state: self._schedule_broadcast())
        engine.coordinator.events.sync_completed.subscribe(lambda event: self._schedule_broadcast())

    def _schedule_broadcast(self):
        task = asyncio.create_task(self.broadcast_status())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def status_message(self) -> str:
        return json.dumps({
            "type": "status",
            "data": {
                "online": self.engine.monitor.is_online(),
                "is_syncing": self.engine.coordinator.is_syncing,
                "pending_sync_count": await self.engine.queue.pending_count(),
                "message": "Connected to Local Bridge"
            }
        })

    async def broadcast_status(self):
        """Broadcast current status to all connected clients."""
        if not self.clients:
            return

        try:
            status_msg = await self.status_message()
        except StorageError as e:
            logger.error(f"Status broadcast skipped: {e}")
            return
        await asyncio.gather(
            *[client.send(status_msg) for client in self.clients],
            return_exceptions=True
        )

    async def handler(self, websocket):
        """
        Handles WebSocket connections from local UI adapters.

        Supports:
        - Status broadcasting (online/offline, pending count)
        - Write submission (sent directly or stored in the queue)
        - Manual sync requests
        """
        logger.info(f"Client connected: {websocket.remote_address}")
        self.clients.add(websocket)

        try:
            await websocket.send(await self.status_message())

            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received")
                    await websocket.send(json.dumps({
                        "type": "error",
                        "error": "Invalid JSON format"
                    }))
                    continue

                msg_type = data.get("type")
                logger.info(f"Received: {msg_type}")
                await websocket.send(json.dumps(await self.dispatch(msg_type, data)))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Client disconnected")
        finally:
            self.clients.discard(websocket)

    async def dispatch(self, msg_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Build the reply for one client message."""

        # ==================== Write Handling ====================
        if msg_type == "enqueue":
            try:
                result = await self.engine.submit(
                    data.get("endpoint"),
                    data.get("action"),
                    data.get("payload"),
                    data.get("priority", "normal"),
                )
            except ValidationError as e:
                return {"type": "enqueue_error", "error": str(e), "code": "INVALID"}
            except PermanentRemoteError as e:
                return {"type": "enqueue_error", "error": str(e), "code": "REJECTED"}
            except StorageQuotaExceeded as e:
                return {"type": "enqueue_error", "error": str(e), "code": "STORAGE_FULL"}
            except StorageError as e:
                return {"type": "enqueue_error", "error": str(e), "code": "STORAGE_FAILED"}

            await self.broadcast_status()
            if result["status"] == "queued":
                return {
                    "type": "enqueue_ack",
                    "status": "stored_locally",
                    "id": result["id"],
                    "message": "Saved. Will sync when online."
                }
            return {"type": "enqueue_ack", "status": "sent", "id": result["id"]}

        # ==================== Sync Request ====================
        if msg_type == "sync":
            try:
                stats = await self.engine.coordinator.manual_sync()
            except NotOnline:
                return {"type": "sync_error", "error": "Device is offline", "code": "NOT_ONLINE"}
            except LockContention:
                return {"type": "sync_error", "error": "Sync already in progress", "code": "SYNC_RUNNING"}
            except StorageError as e:
                return {"type": "sync_error", "error": str(e), "code": "STORAGE_FAILED"}
            return {"type": "sync_result", "data": stats.to_dict()}

        # ==================== Status Request ====================
        if msg_type == "get_status":
            return {"type": "status", "data": await self.engine.get_status()}

        # ==================== Pending Count ====================
        if msg_type == "get_pending":
            return {"type": "pending_info", "count": await self.engine.queue.pending_count()}

        # ==================== Ping/Pong ====================
        if msg_type == "ping":
            return {"type": "pong", "timestamp": data.get("timestamp")}

        logger.warning(f"Unknown message type: {msg_type}")
        return {"type": "error", "error": f"Unknown message type: {msg_type}"}

    async def serve(self, host: str = "0.0.0.0", port: int = 8002):
        """
        Run the bridge until cancelled.

        Args:
            host: Interface to bind
            port: Port to listen on (default: 8002)
        """
        async with websockets.serve(self.handler, host, port):
            logger.info(f"Local WebSocket Bridge started on ws://{host}:{port}")
            await asyncio.Future()
