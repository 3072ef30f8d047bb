"""Bounded cache of resolved track metadata."""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional

from ..errors import ObservationDataInvalid
from ..models.track import Track

DEFAULT_CAPACITY = 500


@dataclass(frozen=True)
class CachedTrack:
    """A track plus the time it was last stored.

    ``resolved`` is True once the metadata came back from the API; entries
    built from raw page data stay unresolved.
    """

    track: Track
    cached_at: float
    resolved: bool = False

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.cached_at < ttl_seconds


class TrackMetadataCache:
    """Track id -> metadata mapping that evicts the oldest ``cached_at`` first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: Dict[str, CachedTrack] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, track_id: str) -> bool:
        return track_id in self._entries

    def __iter__(self) -> Iterator[CachedTrack]:
        return iter(list(self._entries.values()))

    def get(self, track_id: str) -> Optional[CachedTrack]:
        return self._entries.get(track_id)

    def get_track(self, track_id: str) -> Optional[Track]:
        entry = self._entries.get(track_id)
        return entry.track if entry else None

    def find_by_permalink(self, permalink: str) -> Optional[CachedTrack]:
        for entry in self._entries.values():
            if entry.track.permalink == permalink:
                return entry
        return None

    def upsert(self, track: Track, cached_at: float, resolved: bool = False) -> list:
        """Insert or refresh an entry.

        Args:
            track: Track metadata
            cached_at: Timestamp used for freshness and eviction order
            resolved: True if the metadata came from the API

        Returns:
            Ids evicted to stay within capacity
        """
        self._entries[track.id] = CachedTrack(track=track, cached_at=cached_at, resolved=resolved)

        evicted = []
        if len(self._entries) > self.capacity:
            by_age = sorted(self._entries.values(), key=lambda e: e.cached_at)
            for entry in by_age[:len(self._entries) - self.capacity]:
                del self._entries[entry.track.id]
                evicted.append(entry.track.id)
        return evicted

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            track_id: {**entry.track.to_dict(), "cached_at": entry.cached_at, "resolved": entry.resolved}
            for track_id, entry in self._entries.items()
        }

    def load(self, data: Optional[Mapping[str, Mapping[str, Any]]]) -> None:
        """Replace the contents with a persisted mapping."""
        self._entries = {}
        for record in (data or {}).values():
            try:
                track = Track.from_payload(record)
            except ObservationDataInvalid:
                continue
            self._entries[track.id] = CachedTrack(
                track,
                float(record.get("cached_at") or 0.0),
                resolved=bool(record.get("resolved")),
            )
        if len(self._entries) > self.capacity:
            keep = sorted(self._entries.values(), key=lambda e: e.cached_at)[-self.capacity:]
            self._entries = {entry.track.id: entry for entry in keep}
