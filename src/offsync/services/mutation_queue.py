"""
mutation_queue.py - Durable, priority-ordered queue of pending local writes

Records are persisted before enqueue() returns, ordered high > normal > low
and FIFO within a tier. Only the sync coordinator moves records through
pending -> syncing -> synced / pending / failed.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config import DAY_MS, HOUR_MS, SyncConfig, now_ms
from .errors import InvalidTransition, RecordNotFound, ValidationError
from .events import QueueEvents
from .local_db import LocalDatabase
from .models import FailureOutcome, MutationRecord, Priority, SyncStatus

logger = logging.getLogger("MutationQueue")


class MutationQueue:
    """Priority queue of MutationRecords backed by LocalDatabase."""

    def __init__(self, db: LocalDatabase, config: Optional[SyncConfig] = None,
                 clock: Callable[[], float] = now_ms):
        self.db = db
        self.config = config or SyncConfig()
        self.clock = clock
        self.events = QueueEvents()
        # Guards every read-modify-write so no caller sees a record mid-transition.
        self._lock = asyncio.Lock()

    async def recover(self) -> int:
        """
        Return records left 'syncing' by an interrupted process to 'pending'.

        Call once at startup. The remote deduplicates on syncId, so resending
        an in-flight record is safe.
        """
        async with self._lock:
            count = await self.db.reset_syncing_mutations()
        if count:
            logger.warning(f"Recovered {count} interrupted mutations to pending")
        return count

    # ==================== Enqueue ====================

    async def enqueue(self, endpoint: str, action: str, payload: Any,
                      priority: Any = Priority.NORMAL) -> str:
        """
        Validate, persist and queue a local write.

        Args:
            endpoint: Name of the remote endpoint that receives the write
            action: Remote action name (e.g. 'submitInventory')
            payload: JSON-serializable write body
            priority: 'high', 'normal' or 'low'

        Returns:
            The id assigned to the record

        Raises:
            ValidationError: endpoint, action or payload missing or malformed
            StorageQuotaExceeded: the queue or the disk is full
        """
        record = self.new_record(endpoint, action, payload, priority)
        await self.add(record)
        return record.id

    async def add(self, record: MutationRecord):
        """Persist a record built by new_record()."""
        async with self._lock:
            await self.db.insert_mutation(record, max_pending=self.config.max_queue_size)
        logger.info(
            f"Queued mutation {record.id} ({record.priority.value}) "
            f"{record.endpoint}/{record.action}"
        )

    def new_record(self, endpoint, action, payload, priority=Priority.NORMAL) -> MutationRecord:
        """Validate a write and assign its id and creation time, without queueing it."""
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise ValidationError("Mutation requires an endpoint")
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("Mutation requires an action")
        if payload is None:
            raise ValidationError("Mutation requires a payload")
        try:
            priority = Priority(priority)
        except ValueError:
            raise ValidationError(
                f"Unknown priority {priority!r}; expected one of "
                f"{', '.join(p.value for p in Priority)}"
            ) from None

        created_at = self.clock()
        return MutationRecord(
            id=f"sync_{uuid.uuid4().hex}",
            created_at=created_at,
            endpoint=endpoint,
            action=action,
            payload=payload,
            priority=priority,
            status=SyncStatus.PENDING,
            next_attempt_at=created_at,
        )

    # ==================== Reads ====================

    async def peek_batch(self, limit: Optional[int] = None) -> List[MutationRecord]:
        """Priority-ordered snapshot of pending records. Nothing is modified."""
        return await self.db.get_mutations(SyncStatus.PENDING, limit=limit)

    async def get(self, record_id: str) -> Optional[MutationRecord]:
        return await self.db.get_mutation(record_id)

    async def pending_count(self) -> int:
        return await self.db.count_mutations(SyncStatus.PENDING)

    async def size(self) -> int:
        return await self.db.count_mutations()

    async def urgent_records(self, max_age_ms: Optional[int] = None) -> List[MutationRecord]:
        """Pending records created within the last max_age_ms."""
        max_age_ms = self.config.urgent_flush_age_ms if max_age_ms is None else max_age_ms
        cutoff = self.clock() - max_age_ms
        return [r for r in await self.peek_batch() if r.created_at > cutoff]

    async def list_failed(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Dead-lettered records, most recent failure first."""
        return await self.db.get_dead_letters(limit)

    async def stats(self) -> Dict[str, Any]:
        """Queue size broken down by priority and age."""
        records = await self.db.get_mutations()
        now = self.clock()
        return {
            "total": len(records),
            "pending": sum(1 for r in records if r.status == SyncStatus.PENDING),
            "syncing": sum(1 for r in records if r.status == SyncStatus.SYNCING),
            "recent_hour": sum(1 for r in records if r.created_at > now - HOUR_MS),
            "today": sum(1 for r in records if r.created_at > now - DAY_MS),
            "priority": {
                p.value: sum(1 for r in records if r.priority == p) for p in Priority
            },
            "oldest_item": min((r.created_at for r in records), default=None),
        }

    async def export(self) -> Dict[str, Any]:
        """JSON-serializable dump of queued and dead-lettered records."""
        return {
            "pending": [r.to_dict() for r in await self.db.get_mutations()],
            "failed": await self.list_failed(limit=1000),
            "exported_at": self.clock(),
        }

    # ==================== Transitions ====================

    async def mark_syncing(self, record_id: str) -> MutationRecord:
        """pending -> syncing."""
        async with self._lock:
            record = await self._require(record_id, SyncStatus.PENDING)
            record.status = SyncStatus.SYNCING
            await self._write(record, SyncStatus.PENDING)
        return record

    async def ack(self, record_id: str) -> MutationRecord:
        """syncing -> synced. The record leaves the queue."""
        async with self._lock:
            record = await self._require(record_id, SyncStatus.SYNCING)
            await self.db.delete_mutation(record_id)
        record.status = SyncStatus.SYNCED
        logger.info(f"Mutation {record_id} synced")
        return record

    async def fail(self, record_id: str, error: Optional[Exception] = None) -> FailureOutcome:
        """
        Record a failed attempt.

        The backoff is min(base_backoff_ms * 2^retry_count, max_backoff_ms),
        computed from the retry count before this failure. The record goes
        back to 'pending' until retry_count reaches max_retries, at which
        point it is dead-lettered and the permanent-failure signal fires.
        """
        async with self._lock:
            record = await self._require(record_id, SyncStatus.SYNCING)
            delay_ms = self.config.backoff_ms(record.retry_count)
            record.retry_count += 1
            record.last_error = str(error) if error is not None else None
            exhausted = record.retry_count >= self.config.max_retries
            if exhausted:
                await self._dead_letter(record)
            else:
                record.status = SyncStatus.PENDING
                record.next_attempt_at = self.clock() + delay_ms
                await self._write(record, SyncStatus.SYNCING)

        if exhausted:
            logger.error(
                f"Mutation {record_id} failed permanently after {record.retry_count} attempts: {error}"
            )
            self.events.permanent_failure.publish(record)
        else:
            logger.warning(
                f"Mutation {record_id} failed ({record.retry_count}/{self.config.max_retries}), "
                f"retry in {delay_ms}ms: {error}"
            )
        return FailureOutcome(record=record, delay_ms=delay_ms, exhausted=exhausted)

    async def fail_permanently(self, record_id: str, error: Optional[Exception] = None) -> MutationRecord:
        """syncing -> failed without consuming further retries."""
        async with self._lock:
            record = await self._require(record_id, SyncStatus.SYNCING)
            record.last_error = str(error) if error is not None else None
            await self._dead_letter(record)
        logger.error(f"Mutation {record_id} rejected by remote: {error}")
        self.events.permanent_failure.publish(record)
        return record

    async def clear(self) -> int:
        """Drop every queued record."""
        async with self._lock:
            count = await self.db.clear_mutations()
        logger.info(f"Mutation queue cleared ({count} records)")
        return count

    async def _require(self, record_id: str, expected: SyncStatus) -> MutationRecord:
        record = await self.db.get_mutation(record_id)
        if record is None:
            raise RecordNotFound(f"No queued mutation with id {record_id}")
        if record.status != expected:
            raise InvalidTransition(
                f"Mutation {record_id} is {record.status.value}, expected {expected.value}"
            )
        return record

    async def _write(self, record: MutationRecord, expected: SyncStatus):
        if not await self.db.update_mutation(record, expected):
            raise InvalidTransition(f"Mutation {record.id} changed underneath a transition")

    async def _dead_letter(self, record: MutationRecord):
        record.status = SyncStatus.FAILED
        await self.db.archive_failed_mutation(record, failed_at=self.clock())
