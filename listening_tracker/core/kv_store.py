"""Cached, write-buffered facade over a storage backend."""

import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config.database import StorageBackend
from ..errors import PersistenceReadFailed, PersistenceWriteFailed
from .scheduler import TimerScheduler

KeyListener = Callable[[Any, str], None]

_MISSING = object()


class StorageKeys:
    """Top-level records kept in the key-value store."""

    TRACKS = "tracks"
    DAILY_STATS = "daily_stats"
    TRACK_METADATA_CACHE = "track_metadata_cache"
    CURRENT_SESSION_SNAPSHOT = "current_session_snapshot"
    SETTINGS = "settings"
    RECAPS = "recaps"
    SCHEMA_VERSION = "schema_version"

    # Listening data; a reset removes these and keeps settings
    DATA = (TRACKS, DAILY_STATS, TRACK_METADATA_CACHE, CURRENT_SESSION_SNAPSHOT, RECAPS)


class KeyValueStore:
    """Async key-value facade with a read cache and coalesced writes.

    ``set`` updates the cache immediately and parks the value in a
    pending-writes map; one scheduled flush writes the whole map to the
    backend. A failed flush puts the values back into the map (unless a newer
    value arrived meanwhile) and schedules another attempt.
    """

    FLUSH_JOB_ID = "kv-store-flush"

    def __init__(
        self,
        backend: StorageBackend,
        scheduler: TimerScheduler,
        write_delay: float = 1.0,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the store.

        Args:
            backend: Durable backend
            scheduler: Scheduler used for the deferred flush
            write_delay: Seconds between the first buffered write and the flush
            logger: Logger instance
        """
        self.backend = backend
        self.scheduler = scheduler
        self.write_delay = write_delay
        self.logger = logger or logging.getLogger(__name__)

        self._cache: Dict[str, Any] = {}
        self._pending: Dict[str, Any] = {}
        self._listeners: Dict[str, List[KeyListener]] = {}
        self._unsubscribe_backend = backend.add_listener(self._handle_backend_change)

    @property
    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def close(self) -> None:
        self.scheduler.cancel(self.FLUSH_JOB_ID)
        self._unsubscribe_backend()

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the value for ``key``.

        Read failures are logged and answered with ``default``.
        """
        if key in self._pending:
            return self._pending[key]
        if key in self._cache:
            return self._cache[key]

        try:
            stored = await self.backend.get_many([key])
        except PersistenceReadFailed as e:
            self.logger.warning(f"Read of '{key}' failed, using default: {e}")
            return default

        value = stored.get(key, default)
        self._cache[key] = value
        return value

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return values for several keys, ``None`` for missing ones."""
        result: Dict[str, Any] = {}
        uncached = []
        for key in keys:
            if key in self._pending:
                result[key] = self._pending[key]
            elif key in self._cache:
                result[key] = self._cache[key]
            else:
                uncached.append(key)

        if uncached:
            try:
                stored = await self.backend.get_many(uncached)
            except PersistenceReadFailed as e:
                self.logger.warning(f"Read of {uncached} failed, using defaults: {e}")
                stored = _MISSING
            for key in uncached:
                if stored is _MISSING:
                    result[key] = None
                    continue
                result[key] = stored.get(key)
                self._cache[key] = result[key]

        return result

    async def set(self, key: str, value: Any, immediate: bool = False) -> None:
        """Store ``value`` under ``key``.

        Args:
            key: Record key
            value: JSON compatible value
            immediate: Write through to the backend instead of buffering

        Raises:
            PersistenceWriteFailed: Only for immediate writes
        """
        await self.set_many({key: value}, immediate=immediate)

    async def set_many(self, items: Dict[str, Any], immediate: bool = False) -> None:
        for key, value in items.items():
            self._cache[key] = value

        if immediate:
            for key in items:
                self._pending.pop(key, None)
            try:
                await self.backend.set_many(items)
            except PersistenceWriteFailed as e:
                self.logger.error(f"Immediate write of {sorted(items)} failed: {e}")
                raise
            return

        self._pending.update(items)
        self._schedule_flush()

    async def remove(self, key: str, immediate: bool = True) -> None:
        """Delete ``key``.

        A buffered removal is committed in the same batch as the other
        pending writes.
        """
        if not immediate:
            await self.set_many({key: None})
            return

        self._cache.pop(key, None)
        self._pending.pop(key, None)
        try:
            await self.backend.remove([key])
        except PersistenceWriteFailed as e:
            self.logger.error(f"Removing '{key}' failed: {e}")

    async def refresh(self, key: str) -> Any:
        """Re-read ``key`` from the backend.

        Picks up values written by another process sharing the backend;
        subscribers are notified when the stored value differs from the
        cached one. A key with a pending local write is left alone.
        """
        if key in self._pending:
            return self._pending[key]

        try:
            stored = await self.backend.get_many([key])
        except PersistenceReadFailed as e:
            self.logger.warning(f"Refresh of '{key}' failed: {e}")
            return self._cache.get(key)

        value = stored.get(key)
        if key not in self._pending and self._cache.get(key) != value:
            self.logger.debug(f"'{key}' changed in storage")
            self._handle_backend_change({key: value})
        return self._pending.get(key, value)

    def subscribe(self, key: str, callback: KeyListener) -> Callable[[], None]:
        """Call ``callback(new_value, key)`` whenever ``key`` changes in the backend.

        Returns:
            Callable that removes the subscription
        """
        self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    async def flush(self) -> None:
        """Write every pending value now.

        Raises:
            PersistenceWriteFailed: If the backend rejected the write; the
                values stay queued for the next attempt
        """
        self.scheduler.cancel(self.FLUSH_JOB_ID)
        error = await self._flush_writes()
        if error is not None:
            raise error

    async def get_usage(self) -> Optional[Dict[str, Any]]:
        """Report bytes used against the backend quota."""
        try:
            used = await self.backend.bytes_in_use()
        except PersistenceReadFailed as e:
            self.logger.error(f"Usage check failed: {e}")
            return None

        quota = self.backend.quota_bytes
        return {
            "used": used,
            "total": quota,
            "percentage": round(used / quota * 100) if quota else None,
            "available": quota - used if quota else None,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    def _schedule_flush(self) -> None:
        self.scheduler.schedule_once(self.FLUSH_JOB_ID, self._flush_writes, self.write_delay)

    async def _flush_writes(self) -> Optional[PersistenceWriteFailed]:
        if not self._pending:
            return None

        writes = self._pending
        self._pending = {}

        try:
            await self.backend.set_many(writes)
        except PersistenceWriteFailed as e:
            self.logger.error(f"Flushing {len(writes)} key(s) failed, re-queued: {e}")
            for key, value in writes.items():
                self._pending.setdefault(key, value)
            self._schedule_flush()
            return e

        self.logger.debug(f"Flushed {len(writes)} key(s): {', '.join(sorted(writes))}")
        return None

    def _handle_backend_change(self, changes: Dict[str, Any]) -> None:
        for key, new_value in changes.items():
            # A newer local value is still waiting to be written
            if key not in self._pending:
                if new_value is None:
                    self._cache.pop(key, None)
                else:
                    self._cache[key] = new_value

            for callback in list(self._listeners.get(key, [])):
                try:
                    callback(copy.deepcopy(new_value), key)
                except Exception as e:
                    self.logger.error(f"Listener for '{key}' failed: {e}", exc_info=True)
