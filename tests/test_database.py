"""Tests for the SQLite and in-memory storage backends."""

import pytest

from listening_tracker.config.database import MemoryBackend, SqliteBackend
from listening_tracker.errors import PersistenceReadFailed, StorageQuotaExceeded


@pytest.fixture
def sqlite_backend(tmp_path, logger):
    return SqliteBackend(tmp_path / "data" / "listening.db", quota_bytes=1024, logger=logger)


def test_creates_schema(sqlite_backend):
    with sqlite_backend.get_connection() as conn:
        tables = [row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")]

    assert "kv_store" in tables


@pytest.mark.asyncio
async def test_set_get_remove(sqlite_backend):
    await sqlite_backend.set_many({"tracks": {"1": {"play_count": 2}}, "settings": {"tracking_enabled": True}})

    stored = await sqlite_backend.get_many(["tracks", "settings", "missing"])
    assert stored == {"tracks": {"1": {"play_count": 2}}, "settings": {"tracking_enabled": True}}

    await sqlite_backend.set_many({"tracks": {}})
    assert (await sqlite_backend.get_many(["tracks"]))["tracks"] == {}

    await sqlite_backend.remove(["tracks"])
    assert await sqlite_backend.get_many(["tracks"]) == {}


@pytest.mark.asyncio
async def test_none_value_removes_key_in_same_write(sqlite_backend):
    await sqlite_backend.set_many({"snapshot": {"track": "1"}, "tracks": {}})

    await sqlite_backend.set_many({"snapshot": None, "tracks": {"1": {}}})

    assert await sqlite_backend.get_many(["snapshot", "tracks"]) == {"tracks": {"1": {}}}
    assert await sqlite_backend.bytes_in_use() == len('{"1":{}}')


@pytest.mark.asyncio
async def test_values_survive_reopen(tmp_path, logger):
    path = tmp_path / "listening.db"
    first = SqliteBackend(path, logger=logger)
    await first.set_many({"recaps": {"2024": {"year": 2024}}})

    second = SqliteBackend(path, logger=logger)
    assert await second.get_many(["recaps"]) == {"recaps": {"2024": {"year": 2024}}}


@pytest.mark.asyncio
async def test_quota_rejects_oversized_write(sqlite_backend):
    await sqlite_backend.set_many({"small": "x" * 100})

    with pytest.raises(StorageQuotaExceeded) as excinfo:
        await sqlite_backend.set_many({"big": "x" * 2000})

    assert excinfo.value.quota == 1024
    assert await sqlite_backend.get_many(["big"]) == {}
    assert await sqlite_backend.bytes_in_use() == 102


@pytest.mark.asyncio
async def test_overwrite_counts_only_new_value_against_quota(sqlite_backend):
    await sqlite_backend.set_many({"doc": "x" * 900})
    await sqlite_backend.set_many({"doc": "y" * 900})

    assert await sqlite_backend.bytes_in_use() == 902


@pytest.mark.asyncio
async def test_corrupt_value_raises_read_failure(sqlite_backend):
    with sqlite_backend.get_connection() as conn:
        conn.execute("INSERT INTO kv_store (key, value) VALUES ('broken', '{not json')")

    with pytest.raises(PersistenceReadFailed):
        await sqlite_backend.get_many(["broken"])


@pytest.mark.asyncio
async def test_listeners_receive_changes(sqlite_backend):
    changes = []
    remove = sqlite_backend.add_listener(changes.append)

    await sqlite_backend.set_many({"a": 1})
    await sqlite_backend.remove(["a"])
    remove()
    await sqlite_backend.set_many({"a": 2})

    assert changes == [{"a": 1}, {"a": None}]


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_writes(logger):
    backend = MemoryBackend(logger=logger)

    def broken(changes):
        raise RuntimeError("listener bug")

    backend.add_listener(broken)
    await backend.set_many({"a": 1})

    assert backend.data == {"a": "1"}


@pytest.mark.asyncio
async def test_memory_backend_quota(logger):
    backend = MemoryBackend(quota_bytes=10, logger=logger)

    with pytest.raises(StorageQuotaExceeded):
        await backend.set_many({"a": "x" * 20})

    assert backend.data == {}
