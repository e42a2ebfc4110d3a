"""
events.py - Typed publish/subscribe channels for engine lifecycle signals

One channel per event category. Subscribers are plain callables; a handler
that raises is logged and never breaks delivery to the others.
"""

import logging
from typing import Callable, Generic, List, TypeVar

from .models import (
    ItemRetryScheduled,
    ItemSynced,
    ItemSyncFailed,
    MutationRecord,
    NetworkState,
    SyncCompleted,
    SyncStarted,
)

logger = logging.getLogger("Events")

T = TypeVar("T")


class EventChannel(Generic[T]):
    """In-process fan-out for a single event type."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []

    def subscribe(self, handler: Callable[[T], None]) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: Callable[[T], None]):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: T):
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler for '{self.name}' failed: {e}")

    def __len__(self) -> int:
        return len(self._handlers)


class SyncEvents:
    """Channels emitted by the sync coordinator."""

    def __init__(self):
        self.sync_started: EventChannel[SyncStarted] = EventChannel("sync-started")
        self.item_synced: EventChannel[ItemSynced] = EventChannel("item-synced")
        self.item_sync_failed: EventChannel[ItemSyncFailed] = EventChannel("item-sync-failed")
        self.item_retry_scheduled: EventChannel[ItemRetryScheduled] = EventChannel("item-retry-scheduled")
        self.sync_completed: EventChannel[SyncCompleted] = EventChannel("sync-completed")


class ConnectivityEvents:
    """Channels emitted by the network monitor."""

    def __init__(self):
        self.restored: EventChannel[NetworkState] = EventChannel("connectivity-restored")
        self.lost: EventChannel[NetworkState] = EventChannel("connectivity-lost")


class QueueEvents:
    """Channels emitted by the mutation queue."""

    def __init__(self):
        self.permanent_failure: EventChannel[MutationRecord] = EventChannel("permanent-failure")
