"""Core functionality for the listening tracker."""

from .aggregation import AggregationStore
from .enrichment import EnrichmentClient
from .events import EventDispatcher, EventType, JsonLinesEventSource, ObservationEvent
from .kv_store import KeyValueStore, StorageKeys
from .metadata_cache import TrackMetadataCache
from .migrations import SCHEMA_VERSION, reset_all_data, run_migrations
from .recap import Recap, RecapGenerator
from .scheduler import TimerScheduler
from .tracker import SessionTracker

__all__ = [
    "AggregationStore",
    "EnrichmentClient",
    "EventDispatcher",
    "EventType",
    "JsonLinesEventSource",
    "SCHEMA_VERSION",
    "KeyValueStore",
    "ObservationEvent",
    "Recap",
    "RecapGenerator",
    "SessionTracker",
    "StorageKeys",
    "TimerScheduler",
    "TrackMetadataCache",
    "reset_all_data",
    "run_migrations",
]
