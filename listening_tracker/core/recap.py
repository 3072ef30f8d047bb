"""Yearly listening recap."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..errors import PersistenceWriteFailed
from ..models.stats import ListeningPatterns
from ..utils.time import Clock, DateRange
from .aggregation import AggregationStore
from .kv_store import KeyValueStore, StorageKeys

RECAP_CANDIDATES = 100
RECAP_TOP_N = 10


def peak_index(values: Sequence[float]) -> Optional[int]:
    """Index of the largest bucket, lowest index on ties, None if all are zero."""
    best = None
    for index, value in enumerate(values):
        if value > 0 and (best is None or value > values[best]):
            best = index
    return best


@dataclass
class RecapSummary:
    total_seconds: float = 0.0
    total_tracks: int = 0
    total_artists: int = 0
    total_plays: int = 0
    most_active_hour: Optional[int] = None
    most_active_day: Optional[int] = None
    most_active_month: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "total_tracks": self.total_tracks,
            "total_artists": self.total_artists,
            "total_plays": self.total_plays,
            "most_active_hour": self.most_active_hour,
            "most_active_day": self.most_active_day,
            "most_active_month": self.most_active_month,
        }


@dataclass
class Recap:
    """Summary of one calendar year of listening."""

    year: int
    generated_at: float
    summary: RecapSummary = field(default_factory=RecapSummary)
    top_tracks: List[Dict[str, Any]] = field(default_factory=list)
    top_artists: List[Dict[str, Any]] = field(default_factory=list)
    patterns: ListeningPatterns = field(default_factory=ListeningPatterns)

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "generated_at": self.generated_at,
            "summary": self.summary.to_dict(),
            "top_tracks": [dict(t) for t in self.top_tracks],
            "top_artists": [dict(a) for a in self.top_artists],
            "patterns": self.patterns.to_dict(),
        }


class RecapGenerator:
    """Builds recaps from the aggregation store. Never mutates it."""

    def __init__(
        self,
        store: AggregationStore,
        kv: KeyValueStore,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.kv = kv
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)

    def generate(self, year: int) -> Recap:
        """Compute the recap for ``year``.

        Only seconds listened inside the year count. Play counts are the
        lifetime counts of the tracks played that year.

        Args:
            year: Calendar year

        Returns:
            Recap (all zeros and None peaks when nothing was played)
        """
        year_range = DateRange.for_year(year)
        ranked = self.store.get_top_tracks(sort_by="play_count", limit=RECAP_CANDIDATES, period=year_range)

        summary = RecapSummary(total_tracks=len(ranked))
        top_tracks = []
        artists: Dict[str, Dict[str, Any]] = {}

        for entry in ranked:
            stats, track = entry.stats, entry.track
            seconds = sum(
                secs for day, secs in stats.daily_seconds.items()
                if year_range.contains_date(day)
            )
            summary.total_seconds += seconds
            summary.total_plays += stats.play_count

            if len(top_tracks) < RECAP_TOP_N:
                top_tracks.append({
                    "id": stats.track_id,
                    "title": track.title if track else "Unknown Track",
                    "artist": track.artist_name if track else "Unknown Artist",
                    "artwork_url": track.artwork_url if track else None,
                    "play_count": stats.play_count,
                    "total_seconds": seconds,
                })

            if track is None or not track.artist_id:
                continue
            artist = artists.setdefault(track.artist_id, {
                "id": track.artist_id,
                "name": track.artist_name,
                "total_seconds": 0.0,
                "play_count": 0,
                "track_count": 0,
            })
            artist["total_seconds"] += seconds
            artist["play_count"] += stats.play_count
            artist["track_count"] += 1

        summary.total_artists = len(artists)

        patterns = self.store.get_listening_patterns(year)
        summary.most_active_hour = peak_index(patterns.by_hour)
        summary.most_active_day = peak_index(patterns.by_day_of_week)
        summary.most_active_month = peak_index(patterns.by_month)

        top_artists = sorted(artists.values(), key=lambda a: a["total_seconds"], reverse=True)

        return Recap(
            year=year,
            generated_at=self.clock.timestamp(),
            summary=summary,
            top_tracks=top_tracks,
            top_artists=top_artists[:RECAP_TOP_N],
            patterns=patterns,
        )

    async def generate_and_save(self, year: int) -> Recap:
        """Compute the recap and store it under ``recaps[year]``.

        Raises:
            PersistenceWriteFailed: If the write-through failed
        """
        recap = self.generate(year)

        saved = dict(await self.kv.get(StorageKeys.RECAPS, {}) or {})
        saved[str(year)] = recap.to_dict()
        try:
            await self.kv.set(StorageKeys.RECAPS, saved, immediate=True)
        except PersistenceWriteFailed:
            self.logger.error(f"Saving the {year} recap failed")
            raise

        self.logger.info(f"Generated {year} recap: {recap.summary.total_tracks} track(s)")
        return recap

    async def get_saved_recap(self, year: int) -> Optional[dict]:
        saved = await self.kv.get(StorageKeys.RECAPS, {}) or {}
        return saved.get(str(year))
