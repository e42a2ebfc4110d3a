"""
offline_mode.py - Network Monitor

This module tracks the client's online/offline state from connectivity
signals and heartbeat results, and emits connectivity-restored /
connectivity-lost only on genuine transitions.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import SyncConfig, now_ms
from .events import ConnectivityEvents
from .models import NetworkState

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("NetworkMonitor")


class NetworkMonitor:
    """
    Pure signal source for connectivity.

    Direct signals (report(), on_connection_lost()) apply immediately.
    Heartbeat failures are debounced: the monitor only goes offline after
    max_failures_before_offline consecutive failures. Repeated identical
    signals never produce duplicate events.
    """

    def __init__(self, online: bool = False, config: Optional[SyncConfig] = None,
                 clock: Callable[[], float] = now_ms):
        self.config = config or SyncConfig()
        self.clock = clock
        self.state = NetworkState(online=online)
        self.events = ConnectivityEvents()
        self.consecutive_failures: int = 0
        self.max_failures_before_offline: int = self.config.max_failures_before_offline
        self.last_heartbeat_success: Optional[float] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        logger.info(f"NetworkMonitor initialized ({'online' if online else 'offline'})")

    # ==================== State ====================

    def is_online(self) -> bool:
        return self.state.online

    def is_offline(self) -> bool:
        return not self.state.online

    def report(self, online: bool, reason: str = ""):
        """
        Apply a connectivity signal.

        Args:
            online: Observed connectivity
            reason: Reason for the signal (for logging)
        """
        if online:
            self.consecutive_failures = 0
        self._set_online(online, reason)

    def _set_online(self, online: bool, reason: str = ""):
        if online == self.state.online:
            return

        self.state = NetworkState(online=online, last_transition_at=self.clock())
        logger.info(f"Connectivity changed: {'online' if online else 'offline'} | Reason: {reason}")

        if online:
            self.events.restored.publish(self.state)
        else:
            self.events.lost.publish(self.state)

    # ==================== Heartbeat Handling ====================

    def on_heartbeat_success(self):
        """Called when a health check against the remote succeeds."""
        self.last_heartbeat_success = self.clock()
        self.consecutive_failures = 0
        self._set_online(True, "Heartbeat succeeded")

    def on_heartbeat_failure(self, error: str = ""):
        """
        Called when a health check against the remote fails.

        Args:
            error: Optional error message
        """
        self.consecutive_failures += 1

        logger.warning(
            f"Heartbeat failed ({self.consecutive_failures}/{self.max_failures_before_offline}): {error}"
        )

        if self.consecutive_failures >= self.max_failures_before_offline:
            self._set_online(
                False, f"Connection lost after {self.consecutive_failures} failures"
            )

    def on_connection_lost(self):
        """Called when the transport reports the connection is gone."""
        logger.warning("Connection lost - entering offline mode immediately")
        self.consecutive_failures = self.max_failures_before_offline
        self._set_online(False, "Connection lost")

    async def run_heartbeat(self, check: Callable[[], Awaitable[bool]],
                            interval_ms: Optional[int] = None):
        """
        Poll check() forever and feed the result into the heartbeat handlers.

        check() returns True when the remote is reachable. Any exception it
        raises counts as a failure.
        """
        interval_ms = interval_ms or self.config.heartbeat_interval_ms
        while True:
            try:
                healthy = await check()
            except Exception as e:
                self.on_heartbeat_failure(str(e))
            else:
                if healthy:
                    self.on_heartbeat_success()
                else:
                    self.on_heartbeat_failure("health check reported unhealthy")
            await asyncio.sleep(interval_ms / 1000)

    def start_heartbeat(self, check: Callable[[], Awaitable[bool]],
                        interval_ms: Optional[int] = None) -> asyncio.Task:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self.run_heartbeat(check, interval_ms))
        return self._heartbeat_task

    async def stop_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    # ==================== Status Report ====================

    def get_status(self) -> dict:
        """Get current status as a dictionary."""
        return {
            "online": self.state.online,
            "last_transition_at": self.state.last_transition_at,
            "last_heartbeat": self.last_heartbeat_success,
            "consecutive_failures": self.consecutive_failures,
        }
