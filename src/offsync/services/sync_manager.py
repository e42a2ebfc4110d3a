"""
sync_manager.py - Store-and-Forward Sync Coordinator

This module drains the mutation queue against the remote service when
the client is online. At most one drain pass runs at a time, whether it
was started manually, by the periodic timer or by a reconnect.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .api_client import BeaconSender, RemoteEndpoint
from .config import SyncConfig, now_ms
from .errors import (
    InvalidTransition,
    LockContention,
    NotOnline,
    PermanentRemoteError,
    RecordNotFound,
    StorageError,
    SyncAlreadyRunning,
    TransientNetworkError,
)
from .events import SyncEvents
from .models import (
    FailureOutcome,
    ItemRetryScheduled,
    ItemSynced,
    ItemSyncFailed,
    MutationRecord,
    NetworkState,
    SyncCompleted,
    SyncStarted,
    SyncStats,
)
from .mutation_queue import MutationQueue
from .offline_mode import NetworkMonitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SyncCoordinator")


class SyncCoordinator:
    """
    Drains MutationQueue through a RemoteEndpoint under a single-flight lock.

    Each record is sent with its id as the idempotency token. Successes are
    acked, timeouts and connection failures are retried with backoff, and
    explicit remote rejections fail the record at once.
    """

    def __init__(self, queue: MutationQueue, remote: RemoteEndpoint, monitor: NetworkMonitor,
                 config: Optional[SyncConfig] = None, beacon: Optional[BeaconSender] = None,
                 clock: Callable[[], float] = now_ms,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.config = config or queue.config
        self.beacon = beacon
        self.clock = clock
        self._sleep = sleep
        self.events = SyncEvents()

        self.is_syncing = False
        self.last_stats: Optional[SyncStats] = None
        self.last_sync_time: Optional[float] = None

        self._periodic_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._reconnect_armed = False

        logger.info("SyncCoordinator initialized")

    # ==================== Triggers ====================

    def arm_reconnect_trigger(self):
        """Start a drain whenever connectivity is restored. Safe to call repeatedly."""
        if self._reconnect_armed:
            return
        self.monitor.events.restored.subscribe(self._on_reconnect)
        self._reconnect_armed = True

    def _on_reconnect(self, state: NetworkState):
        """Callback triggered when connection is restored."""
        logger.info("Reconnect detected - triggering sync")
        task = asyncio.create_task(self.trigger_sync())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def manual_sync(self) -> SyncStats:
        """
        Run one drain pass now.

        Raises:
            NotOnline: the monitor reports the device offline
            SyncAlreadyRunning: another pass holds the lock
            StorageError: durable storage failed; the pass was aborted
        """
        if not self.monitor.is_online():
            raise NotOnline("Cannot sync while offline")
        if self.is_syncing:
            raise SyncAlreadyRunning("Sync already in progress")

        # Taken before the first await so a concurrent trigger sees it.
        self.is_syncing = True
        try:
            return await self._drain()
        finally:
            self.is_syncing = False

    async def trigger_sync(self) -> Optional[SyncStats]:
        """Background entry point: like manual_sync() but never raises."""
        try:
            return await self.manual_sync()
        except NotOnline:
            logger.debug("Skipping sync: offline")
        except LockContention:
            logger.debug("Skipping sync: already running")
        except StorageError as e:
            logger.error(f"Sync aborted by storage failure: {e}")
        return None

    async def periodic_sync(self, interval_ms: Optional[int] = None):
        """Run a drain every interval_ms. Ticks while offline or busy are no-ops."""
        interval_ms = interval_ms or self.config.periodic_sync_interval_ms
        while True:
            await asyncio.sleep(interval_ms / 1000)
            await self.tick()

    async def tick(self) -> Optional[SyncStats]:
        """A single periodic tick."""
        if not self.monitor.is_online() or self.is_syncing:
            return None
        return await self.trigger_sync()

    def start_periodic_sync(self, interval_ms: Optional[int] = None) -> asyncio.Task:
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self.periodic_sync(interval_ms))
        return self._periodic_task

    async def stop(self):
        """Cancel the periodic timer and any reconnect-triggered drains."""
        tasks = list(self._background_tasks)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ==================== Drain Pass ====================

    async def _drain(self) -> SyncStats:
        # Records left 'syncing' by an aborted pass are only reachable again as 'pending'
        await self.queue.recover()
        batch = await self.queue.peek_batch(self.config.batch_size)
        queue_length = await self.queue.pending_count()
        stats = SyncStats()

        logger.info(f"Syncing {len(batch)} of {queue_length} pending mutations...")
        self.events.sync_started.publish(SyncStarted(queue_length=queue_length))
        await self.queue.db.log_activity(
            'sync_start', 'pending', f"Syncing {len(batch)} of {queue_length} mutations"
        )

        try:
            await self._run_pass(batch, stats)
        except StorageError as e:
            await self._abort(e)
            raise

        # Every row still in the table is unsent, whatever its status
        stats.remaining = await self.queue.size()
        self.last_stats = stats
        self.last_sync_time = self.clock()

        logger.info(
            f"Sync complete: success {stats.success}, failure {stats.failure}, "
            f"remaining {stats.remaining}"
        )
        self.events.sync_completed.publish(
            SyncCompleted(success=stats.success, failure=stats.failure, remaining=stats.remaining)
        )
        await self.queue.db.log_activity(
            'sync_complete', 'completed',
            f"success={stats.success} failure={stats.failure} remaining={stats.remaining}"
        )
        return stats

    async def _abort(self, error: StorageError):
        """Best-effort cleanup after storage failed mid-pass."""
        logger.error(f"Drain pass aborted by storage failure: {error}")
        try:
            await self.queue.recover()
            await self.queue.db.log_activity('sync_error', 'failed', str(error))
        except StorageError as e:
            logger.error(f"Cleanup after aborted pass failed, next sync will retry: {e}")

    async def _run_pass(self, batch: List[MutationRecord], stats: SyncStats):
        """
        Transmit the snapshot until every record in it is terminal.

        The next record sent is the first one, in priority order, whose
        backoff has elapsed. A retry whose backoff is within
        inline_retry_max_ms is waited out and sent immediately; longer
        backoffs let the rest of the batch go first.
        """
        order = [record.id for record in batch]
        records = {record.id: record for record in batch}
        started = self.clock()
        retry_now: Optional[str] = None

        while order:
            if not self.monitor.is_online():
                logger.warning("Connectivity lost mid-sync, leaving the rest queued")
                break

            if retry_now is not None:
                record, retry_now = records[retry_now], None
            else:
                now = self.clock()
                record = next(
                    (records[i] for i in order if records[i].next_attempt_at <= now), None
                )
                if record is None:
                    wake_at = min(records[i].next_attempt_at for i in order)
                    if wake_at - started > self.config.max_pass_wait_ms:
                        logger.info(f"Deferring {len(order)} backed-off mutations to the next sync")
                        break
                    await self._sleep((wake_at - now) / 1000)
                    continue

            outcome = await self._process(record, stats)
            if outcome is None:
                order.remove(record.id)
                continue

            records[record.id] = outcome.record
            if outcome.delay_ms <= self.config.inline_retry_max_ms:
                await self._sleep(outcome.delay_ms / 1000)
                retry_now = record.id

    async def _process(self, record: MutationRecord, stats: SyncStats) -> Optional[FailureOutcome]:
        """
        Send one record and settle it.

        Returns the FailureOutcome when the record stays queued for a retry,
        None once it is terminal.
        """
        try:
            record = await self.queue.mark_syncing(record.id)
        except (RecordNotFound, InvalidTransition) as e:
            logger.warning(f"Skipping mutation {record.id}: {e}")
            return None

        try:
            response = await self._transmit(record)
        except PermanentRemoteError as e:
            stats.failure += 1
            failed = await self.queue.fail_permanently(record.id, e)
            await self._report_failure(failed, e)
            return None
        except TransientNetworkError as e:
            stats.failure += 1
            outcome = await self.queue.fail(record.id, e)
            if outcome.exhausted:
                await self._report_failure(outcome.record, e)
                return None
            self.events.item_retry_scheduled.publish(
                ItemRetryScheduled(record=outcome.record, error=e, delay_ms=outcome.delay_ms)
            )
            return outcome

        synced = await self.queue.ack(record.id)
        stats.success += 1
        self.events.item_synced.publish(ItemSynced(record=synced, response=response))
        return None

    async def send_now(self, record: MutationRecord) -> Dict[str, Any]:
        """Transmit a record outside the queue, e.g. a write made while online."""
        return await self._transmit(record)

    async def _transmit(self, record: MutationRecord) -> Dict[str, Any]:
        """Send with a bounded timeout and classify every outcome."""
        request = record.to_request(self.config.source)
        try:
            response = await asyncio.wait_for(
                self.remote.send(record.endpoint, request),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientNetworkError(
                f"No response within {self.config.request_timeout_ms}ms"
            ) from None
        except (TransientNetworkError, PermanentRemoteError):
            raise
        except Exception as e:
            raise TransientNetworkError(f"Transport error: {e}") from e

        if not isinstance(response, dict):
            return {"success": True, "data": response}
        if response.get("success") is False:
            raise PermanentRemoteError(
                response.get("error") or "Remote rejected the request", response=response
            )
        return response

    async def _report_failure(self, record: MutationRecord, error: Exception):
        self.events.item_sync_failed.publish(ItemSyncFailed(record=record, error=error))
        await self.queue.db.log_activity('item_failed', 'failed', f"{record.id}: {error}")

    # ==================== Lifecycle ====================

    async def flush_urgent(self) -> int:
        """
        Best-effort push of recently queued writes before the process ends.

        Sends one beacon with every pending record younger than
        urgent_flush_age_ms and returns without waiting for a reply. The
        records stay queued; the next drain sends them again under the same
        syncId.
        """
        if self.beacon is None or not self.monitor.is_online():
            return 0

        records = await self.queue.urgent_records()
        if not records:
            return 0

        self.beacon.send({
            "action": "syncUrgentData",
            "data": [record.to_request(self.config.source) for record in records],
        })
        logger.info(f"Urgent flush sent for {len(records)} mutations")
        await self.queue.db.log_activity('urgent_flush', 'completed', f"{len(records)} mutations")
        return len(records)

    async def get_sync_status(self) -> Dict:
        """Get current sync status."""
        return {
            "is_syncing": self.is_syncing,
            "pending_count": await self.queue.pending_count(),
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
            "last_sync_time": self.last_sync_time,
            "last_sync_logs": await self.queue.db.get_recent_logs(5),
        }
