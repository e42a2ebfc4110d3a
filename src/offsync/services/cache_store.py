"""
cache_store.py - TTL-keyed local cache with stale-read fallback
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import SyncConfig, now_ms
from .errors import ValidationError
from .local_db import LocalDatabase
from .models import CacheEntry

logger = logging.getLogger("CacheStore")


class CacheStore:
    """
    Key/value cache persisted in LocalDatabase.

    Entries past expires_at are never returned as fresh. Expired rows stay
    on disk until the periodic sweep removes them, so a caller can still
    ask for them with allow_stale=True when the remote is unreachable.
    """

    def __init__(self, db: LocalDatabase, config: Optional[SyncConfig] = None,
                 clock: Callable[[], float] = now_ms):
        self.db = db
        self.config = config or SyncConfig()
        self.clock = clock
        self._sweep_task: Optional[asyncio.Task] = None

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None):
        """
        Store value under key, replacing any previous entry. Durable on return.

        None is not cacheable: get() could not tell it apart from a miss.
        """
        if value is None:
            raise ValidationError(f"Cannot cache None under '{key}'")
        ttl_ms = self.config.cache_default_ttl_ms if ttl_ms is None else ttl_ms
        stored_at = self.clock()
        await self.db.put_cache(key, value, stored_at, stored_at + ttl_ms)

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        """The raw entry for key, fresh or not."""
        row = await self.db.get_cache(key)
        if row is None:
            return None
        return CacheEntry(
            key=row["key"],
            value=row["value"],
            stored_at=row["stored_at"],
            expires_at=row["expires_at"],
        )

    async def get(self, key: str, allow_stale: bool = False, default: Any = None) -> Any:
        """
        Read a cached value.

        Args:
            key: Cache key
            allow_stale: Return an expired value instead of a miss
            default: Returned on a miss

        Returns:
            The cached value, or default on a miss
        """
        entry = await self.lookup(key)
        if entry is None:
            return default
        if entry.is_fresh(self.clock()):
            return entry.value
        if allow_stale:
            logger.info(f"Serving stale cache entry: {key}")
            return entry.value
        return default

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]],
                          ttl_ms: Optional[int] = None) -> Any:
        """
        Read-through helper.

        A fresh hit is returned directly. Otherwise loader() is awaited and
        its result cached (a None result is returned uncached). If loader()
        raises, an expired value is served when one exists; otherwise the
        loader's error propagates.
        """
        entry = await self.lookup(key)
        if entry is not None and entry.is_fresh(self.clock()):
            return entry.value

        try:
            value = await loader()
        except Exception as e:
            if entry is not None:
                logger.warning(f"Loader for '{key}' failed, using cached data: {e}")
                return entry.value
            raise

        if value is not None:
            await self.set(key, value, ttl_ms)
        return value

    async def delete(self, key: str) -> bool:
        return await self.db.delete_cache(key)

    async def clear(self, key_prefix: str = "") -> int:
        """Remove every entry whose key starts with key_prefix (all entries if empty)."""
        count = await self.db.clear_cache(key_prefix)
        logger.info(f"Cleared {count} cache entries (prefix={key_prefix!r})")
        return count

    # ==================== Expiry Sweep ====================

    async def sweep(self) -> int:
        """Delete every expired entry in one statement."""
        count = await self.db.delete_expired_cache(self.clock())
        if count:
            logger.info(f"Swept {count} expired cache entries")
        return count

    async def run_sweeper(self, interval_ms: Optional[int] = None):
        """Sweep forever at a fixed interval."""
        interval_ms = interval_ms or self.config.cache_sweep_interval_ms
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}")

    def start_sweeper(self, interval_ms: Optional[int] = None) -> asyncio.Task:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self.run_sweeper(interval_ms))
        return self._sweep_task

    async def stop_sweeper(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def status(self, key_prefix: str = "") -> Dict[str, Any]:
        """Entry counts, total and expired, optionally restricted to a prefix."""
        keys = await self.db.get_cache_keys(key_prefix)
        now = self.clock()
        return {
            "entries": len(keys),
            "expired": sum(1 for k in keys if k["expires_at"] <= now),
            "timestamp": now,
        }
