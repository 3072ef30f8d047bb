"""Listening session models."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Optional

from .track import Track


class TrackerState(str, Enum):
    """Playback state of the session tracker."""

    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class Session:
    """One continuous listening interval for a single track."""

    track: Track
    started_at: float
    session_seconds: float = 0.0
    has_counted_play: bool = False
    completed: bool = False
    flushed: bool = False

    @property
    def track_id(self) -> str:
        return self.track.id

    def accrue(self, seconds: float) -> 'Session':
        return replace(self, session_seconds=self.session_seconds + seconds)

    def counted(self) -> 'Session':
        return replace(self, has_counted_play=True)

    def with_track(self, track: Track) -> 'Session':
        return replace(self, track=track)

    def is_complete(self, ratio: float) -> bool:
        """True if the listened share of the track reaches ``ratio``."""
        duration = self.track.duration_seconds
        if not duration:
            return False
        return self.session_seconds >= ratio * duration

    def closed(self, ratio: float) -> 'Session':
        return replace(self, completed=self.is_complete(ratio), flushed=True)


@dataclass(frozen=True)
class SessionSnapshot:
    """Best-effort copy of the in-progress session used for crash recovery."""

    track: Track
    is_playing: bool
    session_seconds: float
    has_counted_play: bool
    saved_at: float

    @classmethod
    def of(cls, session: Session, is_playing: bool, saved_at: float) -> 'SessionSnapshot':
        return cls(
            track=session.track,
            is_playing=is_playing,
            session_seconds=session.session_seconds,
            has_counted_play=session.has_counted_play,
            saved_at=saved_at,
        )

    def to_dict(self) -> dict:
        return {
            "track": self.track.to_dict(),
            "is_playing": self.is_playing,
            "session_seconds": self.session_seconds,
            "has_counted_play": self.has_counted_play,
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['SessionSnapshot']:
        if not data or not data.get("track"):
            return None
        return cls(
            track=Track.from_payload(data["track"]),
            is_playing=bool(data.get("is_playing")),
            session_seconds=float(data.get("session_seconds") or 0.0),
            has_counted_play=bool(data.get("has_counted_play")),
            saved_at=float(data.get("saved_at") or 0.0),
        )
