"""Aggregated listening statistics models."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from .track import Track


@dataclass(frozen=True)
class TrackStats:
    """Lifetime counters for one track.

    ``total_seconds`` always equals the sum of ``daily_seconds``; both are
    only ever changed together through :meth:`with_listening_time`.
    """

    track_id: str
    play_count: int = 0
    total_seconds: float = 0.0
    first_played_at: Optional[float] = None
    last_played_at: Optional[float] = None
    daily_seconds: Dict[str, float] = field(default_factory=dict)

    def with_listening_time(self, seconds: float, day: str, at: float) -> 'TrackStats':
        daily = dict(self.daily_seconds)
        daily[day] = daily.get(day, 0.0) + seconds
        return replace(
            self,
            total_seconds=self.total_seconds + seconds,
            daily_seconds=daily,
            first_played_at=self.first_played_at if self.first_played_at is not None else at,
            last_played_at=at,
        )

    def with_play(self, at: float) -> 'TrackStats':
        return replace(
            self,
            play_count=self.play_count + 1,
            first_played_at=self.first_played_at if self.first_played_at is not None else at,
            last_played_at=at,
        )

    def to_dict(self) -> dict:
        return {
            "track_id": self.track_id,
            "play_count": self.play_count,
            "total_seconds": self.total_seconds,
            "first_played_at": self.first_played_at,
            "last_played_at": self.last_played_at,
            "daily_seconds": dict(self.daily_seconds),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TrackStats':
        daily = {str(k): float(v) for k, v in (data.get("daily_seconds") or {}).items()}
        return cls(
            track_id=str(data["track_id"]),
            play_count=int(data.get("play_count") or 0),
            total_seconds=float(data.get("total_seconds") or 0.0),
            first_played_at=data.get("first_played_at"),
            last_played_at=data.get("last_played_at"),
            daily_seconds=daily,
        )


@dataclass(frozen=True)
class DailyStats:
    """Listening totals for one local calendar day."""

    date: str
    total_seconds: float = 0.0
    sessions_count: int = 0
    hourly_seconds: Dict[int, float] = field(default_factory=dict)
    track_ids: FrozenSet[str] = frozenset()

    @property
    def tracks_played(self) -> int:
        return len(self.track_ids)

    def with_listening_time(self, seconds: float, hour: int) -> 'DailyStats':
        hourly = dict(self.hourly_seconds)
        hourly[hour] = hourly.get(hour, 0.0) + seconds
        return replace(self, total_seconds=self.total_seconds + seconds, hourly_seconds=hourly)

    def with_session(self) -> 'DailyStats':
        return replace(self, sessions_count=self.sessions_count + 1)

    def with_track(self, track_id: str) -> 'DailyStats':
        return replace(self, track_ids=self.track_ids | {track_id})

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "total_seconds": self.total_seconds,
            "sessions_count": self.sessions_count,
            "tracks_played": self.tracks_played,
            "hourly_seconds": {str(hour): seconds for hour, seconds in sorted(self.hourly_seconds.items())},
            "track_ids": sorted(self.track_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DailyStats':
        hourly = {int(k): float(v) for k, v in (data.get("hourly_seconds") or {}).items()}
        return cls(
            date=str(data["date"]),
            total_seconds=float(data.get("total_seconds") or 0.0),
            sessions_count=int(data.get("sessions_count") or 0),
            hourly_seconds=hourly,
            track_ids=frozenset(str(t) for t in data.get("track_ids") or ()),
        )


@dataclass
class ListeningPatterns:
    """Seconds folded into fixed buckets.

    ``by_day_of_week`` is indexed Monday = 0, ``by_month`` January = 0.
    """

    by_hour: List[float] = field(default_factory=lambda: [0.0] * 24)
    by_day_of_week: List[float] = field(default_factory=lambda: [0.0] * 7)
    by_month: List[float] = field(default_factory=lambda: [0.0] * 12)

    def to_dict(self) -> dict:
        return {
            "by_hour": list(self.by_hour),
            "by_day_of_week": list(self.by_day_of_week),
            "by_month": list(self.by_month),
        }


@dataclass
class TotalStats:
    """Totals across all tracks in a period."""

    total_seconds: float = 0.0
    total_tracks: int = 0
    total_plays: int = 0
    total_artists: int = 0

    def to_dict(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "total_tracks": self.total_tracks,
            "total_plays": self.total_plays,
            "total_artists": self.total_artists,
        }


@dataclass
class TopTrack:
    """Track stats joined with cached metadata."""

    stats: TrackStats
    track: Optional[Track] = None

    def to_dict(self) -> dict:
        data = self.stats.to_dict()
        data["track"] = self.track.to_dict() if self.track else None
        return data
