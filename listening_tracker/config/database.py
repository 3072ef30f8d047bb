"""Durable key-value backends for the listening tracker."""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import PersistenceReadFailed, PersistenceWriteFailed, StorageQuotaExceeded

ChangeListener = Callable[[Dict[str, Any]], None]


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


class StorageBackend:
    """Async key-value backend with a change-notification feed.

    Subclasses implement the blocking ``_read``/``_write``/``_delete``/``_usage``
    primitives; ``_run`` decides where they execute. Values are JSON
    compatible objects. Listeners receive ``{key: new_value}`` after every
    committed change, with ``None`` for removed keys.
    """

    def __init__(self, quota_bytes: Optional[int] = None, logger: Optional[logging.Logger] = None):
        self.quota_bytes = quota_bytes
        self.logger = logger or logging.getLogger(__name__)
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, changes: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                self.logger.error(f"Storage change listener failed: {e}", exc_info=True)

    async def _run(self, func: Callable, *args: Any) -> Any:
        return func(*args)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Read several keys; missing keys are absent from the result.

        Raises:
            PersistenceReadFailed: If the backend cannot be read
        """
        return await self._run(self._read, list(keys))

    async def set_many(self, items: Dict[str, Any]) -> None:
        """Write several keys in one transaction.

        A ``None`` value removes its key within the same transaction.

        Raises:
            PersistenceWriteFailed: If the write fails or exceeds the quota
        """
        if not items:
            return
        await self._run(self._write, dict(items))
        self._notify(dict(items))

    async def remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        await self._run(self._delete, keys)
        self._notify({key: None for key in keys})

    async def bytes_in_use(self) -> int:
        return await self._run(self._usage)

    def _check_quota(self, used: int) -> None:
        if self.quota_bytes is not None and used > self.quota_bytes:
            raise StorageQuotaExceeded(used, self.quota_bytes)

    def _read(self, keys: List[str]) -> Dict[str, Any]:
        raise NotImplementedError

    def _write(self, items: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _delete(self, keys: List[str]) -> None:
        raise NotImplementedError

    def _usage(self) -> int:
        raise NotImplementedError


class MemoryBackend(StorageBackend):
    """In-process backend for tests and dry runs."""

    def __init__(self, quota_bytes: Optional[int] = None, logger: Optional[logging.Logger] = None):
        super().__init__(quota_bytes=quota_bytes, logger=logger)
        self.data: Dict[str, str] = {}
        self.fail_writes = False
        self.fail_reads = False
        self.write_count = 0

    def _read(self, keys: List[str]) -> Dict[str, Any]:
        if self.fail_reads:
            raise PersistenceReadFailed("Memory backend read failure")
        return {key: json.loads(self.data[key]) for key in keys if key in self.data}

    def _write(self, items: Dict[str, Any]) -> None:
        if self.fail_writes:
            raise PersistenceWriteFailed("Memory backend write failure")
        encoded = {key: _encode(value) for key, value in items.items() if value is not None}
        remaining = sum(len(v.encode("utf-8")) for k, v in self.data.items() if k not in items)
        self._check_quota(remaining + sum(len(v.encode("utf-8")) for v in encoded.values()))
        for key, value in items.items():
            if value is None:
                self.data.pop(key, None)
        self.data.update(encoded)
        self.write_count += 1

    def _delete(self, keys: List[str]) -> None:
        for key in keys:
            self.data.pop(key, None)

    def _usage(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self.data.values())


class SqliteBackend(StorageBackend):
    """SQLite backed key-value store.

    Each key is a row holding a JSON document. Blocking sqlite3 work runs in
    a worker thread so the event loop is never held up by disk I/O.
    """

    def __init__(
        self,
        db_path: Path,
        quota_bytes: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the backend.

        Args:
            db_path: Path to SQLite database file
            quota_bytes: Maximum bytes of stored values (None for unbounded)
            logger: Logger instance
        """
        super().__init__(quota_bytes=quota_bytes, logger=logger)
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_database(self) -> None:
        """Initialize database schema."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    async def _run(self, func: Callable, *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)

    def _read(self, keys: List[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})",
                    keys
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceReadFailed(f"Failed to read {keys}: {e}") from e

        result = {}
        for row in rows:
            try:
                result[row['key']] = json.loads(row['value'])
            except json.JSONDecodeError as e:
                raise PersistenceReadFailed(f"Corrupt value for key {row['key']}: {e}") from e
        return result

    def _write(self, items: Dict[str, Any]) -> None:
        encoded = {key: _encode(value) for key, value in items.items() if value is not None}
        deleted = [key for key, value in items.items() if value is None]
        placeholders = ",".join("?" for _ in items)
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) AS used "
                    f"FROM kv_store WHERE key NOT IN ({placeholders})",
                    list(items)
                )
                remaining = cursor.fetchone()['used']
                self._check_quota(remaining + sum(len(v.encode("utf-8")) for v in encoded.values()))

                cursor.executemany("DELETE FROM kv_store WHERE key = ?", [(key,) for key in deleted])
                now = datetime.now().isoformat()
                cursor.executemany("""
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """, [(key, value, now) for key, value in encoded.items()])
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to write {sorted(encoded)}: {e}") from e

    def _delete(self, keys: List[str]) -> None:
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.executemany("DELETE FROM kv_store WHERE key = ?", [(key,) for key in keys])
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to remove {keys}: {e}") from e

    def _usage(self) -> int:
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) AS used FROM kv_store")
                return cursor.fetchone()['used']
        except sqlite3.Error as e:
            raise PersistenceReadFailed(f"Failed to measure storage usage: {e}") from e
