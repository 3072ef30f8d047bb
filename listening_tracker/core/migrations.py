"""Stored schema versioning and data reset."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..errors import PersistenceWriteFailed
from .kv_store import KeyValueStore, StorageKeys

SCHEMA_VERSION = 1

Documents = Dict[str, Any]


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: Callable[[Documents], Documents]


MIGRATIONS: List[Migration] = [
    Migration(1, "Initial schema", lambda documents: documents),
]


async def get_schema_version(kv: KeyValueStore) -> int:
    version = await kv.get(StorageKeys.SCHEMA_VERSION)
    try:
        return int(version or 0)
    except (TypeError, ValueError):
        return 0


async def run_migrations(
    kv: KeyValueStore,
    migrations: Optional[List[Migration]] = None,
    target: int = SCHEMA_VERSION,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Bring stored documents up to ``target``.

    Documents and the new version marker are written in one batch.

    Args:
        kv: Key-value store
        migrations: Ordered migrations (the built-in list if None)
        target: Schema version the code expects
        logger: Logger instance

    Returns:
        True if any migration ran

    Raises:
        PersistenceWriteFailed: If the migrated documents could not be written
    """
    logger = logger or logging.getLogger(__name__)
    migrations = MIGRATIONS if migrations is None else migrations

    current = await get_schema_version(kv)
    if current > target:
        logger.warning(f"Stored schema v{current} is newer than supported v{target}")
        return False
    if current == target:
        logger.debug(f"Schema is up to date (v{current})")
        return False

    pending = [m for m in migrations if current < m.version <= target]
    if not pending:
        await kv.set(StorageKeys.SCHEMA_VERSION, target, immediate=True)
        return False

    keys = [*StorageKeys.DATA, StorageKeys.SETTINGS]
    stored = await kv.get_many(keys)
    documents = {key: value for key, value in stored.items() if value is not None}

    for migration in pending:
        logger.info(f"Running migration v{migration.version}: {migration.description}")
        documents = migration.up(documents)

    try:
        await kv.set_many({**documents, StorageKeys.SCHEMA_VERSION: target}, immediate=True)
    except PersistenceWriteFailed:
        logger.error(f"Migration to schema v{target} failed")
        raise

    logger.info(f"Storage migrated from v{current} to v{target}")
    return True


async def reset_all_data(kv: KeyValueStore, logger: Optional[logging.Logger] = None) -> None:
    """Delete every listening record, keeping settings and the schema version.

    Raises:
        PersistenceWriteFailed: If the backend rejected the removal
    """
    logger = logger or logging.getLogger(__name__)
    await kv.set_many({key: None for key in StorageKeys.DATA}, immediate=True)
    logger.info("Listening data reset")
