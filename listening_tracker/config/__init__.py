"""Configuration and storage backends for the listening tracker."""

from .database import MemoryBackend, SqliteBackend, StorageBackend
from .settings import Settings

__all__ = ["MemoryBackend", "Settings", "SqliteBackend", "StorageBackend"]
