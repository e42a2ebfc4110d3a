"""
engine.py - Composition root for the offline sync engine

Builds one instance of each component and wires them together. Callers
that need isolated instances (tests, several clients in one process)
create several engines instead of sharing module-level singletons.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .api_client import BeaconSender, HttpRemoteEndpoint, RemoteEndpoint
from .cache_store import CacheStore
from .config import SyncConfig, now_ms
from .errors import StorageError, TransientNetworkError
from .interceptor import BackgroundInterceptor, Fetcher
from .local_db import LocalDatabase
from .models import NetworkState, Priority
from .mutation_queue import MutationQueue
from .offline_mode import NetworkMonitor
from .sync_manager import SyncCoordinator

logger = logging.getLogger("Engine")


class OfflineEngine:
    """Owns storage, queue, cache, monitor, coordinator and interceptor."""

    def __init__(self, config: Optional[SyncConfig] = None,
                 remote: Optional[RemoteEndpoint] = None,
                 fetcher: Optional[Fetcher] = None,
                 beacon: Optional[BeaconSender] = None,
                 online: bool = False,
                 clock: Callable[[], float] = now_ms,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or SyncConfig()
        self.db = LocalDatabase(self.config.db_path)
        self.queue = MutationQueue(self.db, self.config, clock)
        self.cache = CacheStore(self.db, self.config, clock)
        self.monitor = NetworkMonitor(online, self.config, clock)
        self.remote = remote or HttpRemoteEndpoint(
            self.config.endpoints,
            timeout_ms=self.config.request_timeout_ms,
            health_endpoint=self.config.health_endpoint,
        )
        if beacon is None and self.config.beacon_url:
            beacon = BeaconSender(self.config.beacon_url)
        self.coordinator = SyncCoordinator(
            self.queue, self.remote, self.monitor, self.config,
            beacon=beacon, clock=clock, sleep=sleep,
        )
        self.interceptor = BackgroundInterceptor(
            self.cache, self.monitor, self.coordinator, fetcher, self.config
        )

        self._tasks: Set[asyncio.Task] = set()
        self.monitor.events.restored.subscribe(
            lambda state: self._log_transition('connectivity_restored', state)
        )
        self.monitor.events.lost.subscribe(
            lambda state: self._log_transition('connectivity_lost', state)
        )

    async def open(self):
        """Open storage and recover records interrupted by a crash."""
        await self.db.open()
        await self.queue.recover()

    async def start(self, heartbeat: bool = True):
        """Open storage and start the periodic sync, cache sweep and heartbeat loops."""
        await self.open()
        self.coordinator.start_periodic_sync()
        self.cache.start_sweeper()
        if heartbeat:
            self.monitor.start_heartbeat(self.remote.ping)
        logger.info("Offline engine started")

    async def stop(self):
        await self.monitor.stop_heartbeat()
        await self.coordinator.stop()
        await self.cache.stop_sweeper()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.interceptor.close()
        await self.remote.close()
        await self.db.close()
        logger.info("Offline engine stopped")

    async def on_terminate(self) -> int:
        """Process is about to end: fire the urgent flush and do not wait for it."""
        return await self.coordinator.flush_urgent()

    # ==================== Writes ====================

    async def submit(self, endpoint: str, action: str, payload: Any,
                     priority: Any = Priority.NORMAL) -> Dict[str, Any]:
        """
        Perform a local write.

        Online, the write is sent straight away and only queued if that
        attempt fails transiently. Offline, it is queued immediately. A
        remote rejection of the direct attempt propagates to the caller.

        Returns:
            {"status": "sent", "response": ...} or {"status": "queued", "id": ...}
        """
        record = self.queue.new_record(endpoint, action, payload, priority)

        if self.monitor.is_online():
            try:
                response = await self.coordinator.send_now(record)
                return {"status": "sent", "id": record.id, "response": response}
            except TransientNetworkError as e:
                logger.warning(f"Direct send failed, queueing {record.id}: {e}")

        await self.queue.add(record)
        return {"status": "queued", "id": record.id}

    # ==================== Status ====================

    async def get_status(self) -> Dict[str, Any]:
        return {
            "network": self.monitor.get_status(),
            "queue": await self.queue.stats(),
            "sync": await self.coordinator.get_sync_status(),
            "cache": await self.interceptor.cache_status(),
        }

    async def recent_logs(self, limit: int = 20):
        """Most recent activity_logs rows, newest first."""
        return await self.db.get_recent_logs(limit)

    def _log_transition(self, event_type: str, state: NetworkState):
        task = asyncio.create_task(self._record(event_type, f"at {state.last_transition_at}"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _record(self, event_type: str, details: str):
        try:
            await self.db.log_activity(event_type, 'completed', details)
        except StorageError as e:
            logger.error(f"Could not record {event_type}: {e}")
