"""Track data models."""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping, Optional

from ..errors import ObservationDataInvalid


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        value = int(float(value))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class Track:
    """Track identity and display metadata."""

    id: str
    title: str = "Unknown Track"
    artist_id: Optional[str] = None
    artist_name: str = "Unknown Artist"
    artwork_url: Optional[str] = None
    duration_ms: Optional[int] = None  # None when the page did not expose it
    permalink: Optional[str] = None
    genre: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.duration_ms:
            return None
        return self.duration_ms / 1000

    @classmethod
    def from_payload(cls, data: Any) -> 'Track':
        """Build a track from an observation payload or a stored record.

        Accepts camelCase keys as posted by the page scripts as well as the
        snake_case keys used in storage.

        Args:
            data: Track instance or mapping

        Returns:
            Track instance

        Raises:
            ObservationDataInvalid: If the payload has no usable id
        """
        if isinstance(data, Track):
            return data
        if not isinstance(data, Mapping):
            raise ObservationDataInvalid(f"Track payload must be a mapping, got {type(data).__name__}")

        track_id = _optional_str(data.get("id"))
        if track_id is None:
            raise ObservationDataInvalid("Track payload has no id")

        return cls(
            id=track_id,
            title=_optional_str(data.get("title")) or "Unknown Track",
            artist_id=_optional_str(_first(data, "artist_id", "artistId")),
            artist_name=_optional_str(_first(data, "artist_name", "artistName")) or "Unknown Artist",
            artwork_url=_optional_str(_first(data, "artwork_url", "artworkUrl")),
            duration_ms=_optional_int(_first(data, "duration_ms", "durationMs", "duration")),
            permalink=_optional_str(data.get("permalink")),
            genre=_optional_str(data.get("genre")),
        )

    def same_identity(self, other: 'Track') -> bool:
        """True if both tracks refer to the same media item."""
        if self.id == other.id:
            return True
        return bool(self.permalink and other.permalink and self.permalink == other.permalink)

    def merged_with(self, enriched: 'Track') -> 'Track':
        """Overlay resolved metadata while keeping this track's id."""
        updates = {}
        defaults = {f.name: f.default for f in fields(self)}
        for f in fields(enriched):
            if f.name == "id":
                continue
            value = getattr(enriched, f.name)
            if value is None or value == defaults[f.name]:
                continue
            updates[f.name] = value
        return replace(self, **updates)

    def to_dict(self) -> dict:
        return asdict(self)
