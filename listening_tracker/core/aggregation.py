"""In-memory listening statistics with debounced persistence."""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set, Union

from ..errors import PersistenceWriteFailed
from ..models.stats import DailyStats, ListeningPatterns, TopTrack, TotalStats, TrackStats
from ..models.track import Track
from ..utils.time import Clock, DateRange, Period, date_key, parse_date_key, resolve_date_range
from .kv_store import KeyValueStore, StorageKeys
from .metadata_cache import DEFAULT_CAPACITY, TrackMetadataCache
from .scheduler import TimerScheduler

MIN_RECORDED_SESSION_SECONDS = 5

SORT_FIELDS = {
    "play_count": "play_count",
    "playCount": "play_count",
    "total_seconds": "total_seconds",
    "totalSeconds": "total_seconds",
}

PeriodLike = Union[Period, str, DateRange]


class AggregationStore:
    """Owns per-track stats, per-day stats and the track metadata cache.

    Every mutation is applied to the in-memory records synchronously and
    marks the touched documents dirty; a single coalesced job later hands the
    dirty documents to the key-value store. ``flush`` is the only path that
    forces the data all the way to the backend.
    """

    PERSIST_JOB_ID = "aggregation-persist"

    def __init__(
        self,
        kv: KeyValueStore,
        scheduler: TimerScheduler,
        clock: Optional[Clock] = None,
        persist_delay: float = 5.0,
        metadata_capacity: int = DEFAULT_CAPACITY,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the store.

        Args:
            kv: Key-value store facade
            scheduler: Scheduler for the coalesced persist job
            clock: Clock used for date/hour buckets and timestamps
            persist_delay: Seconds between the first mutation and the persist
            metadata_capacity: Maximum number of cached track metadata entries
            logger: Logger instance
        """
        self.kv = kv
        self.scheduler = scheduler
        self.clock = clock or Clock()
        self.persist_delay = persist_delay
        self.logger = logger or logging.getLogger(__name__)

        self.metadata_cache = TrackMetadataCache(metadata_capacity)
        self._tracks: Dict[str, TrackStats] = {}
        self._daily: Dict[str, DailyStats] = {}
        self._dirty: Set[str] = set()

    async def load(self) -> None:
        """Load all documents from the key-value store.

        Unreadable documents fall back to empty ones.
        """
        stored = await self.kv.get_many([
            StorageKeys.TRACKS,
            StorageKeys.DAILY_STATS,
            StorageKeys.TRACK_METADATA_CACHE,
        ])

        tracks = {}
        for track_id, data in (stored.get(StorageKeys.TRACKS) or {}).items():
            try:
                tracks[track_id] = TrackStats.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable stats for track {track_id}: {e}")

        daily = {}
        for day, data in (stored.get(StorageKeys.DAILY_STATS) or {}).items():
            try:
                daily[day] = DailyStats.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable daily stats for {day}: {e}")

        self._tracks = tracks
        self._daily = daily
        self.metadata_cache.load(stored.get(StorageKeys.TRACK_METADATA_CACHE))
        self._dirty.clear()

        self.logger.info(
            f"Loaded stats for {len(self._tracks)} track(s), {len(self._daily)} day(s), "
            f"{len(self.metadata_cache)} cached track(s)"
        )

    # Mutations

    def get_stats(self, track_id: str) -> TrackStats:
        """Return stats for a track, a zero record if it was never played."""
        return self._tracks.get(track_id) or TrackStats(track_id=track_id)

    def get_day(self, day: str) -> Optional[DailyStats]:
        return self._daily.get(day)

    def add_listening_time(self, track_id: str, seconds: float) -> None:
        """Accrue listened seconds to the track and to today's buckets."""
        if seconds <= 0:
            return

        now = self.clock.now()
        today = date_key(now)

        track_stats = self.get_stats(track_id).with_listening_time(seconds, today, now.timestamp())
        day_stats = self._today(today).with_listening_time(seconds, now.hour)

        self._tracks[track_id] = track_stats
        self._daily[today] = day_stats
        self._mark_dirty(StorageKeys.TRACKS, StorageKeys.DAILY_STATS)

    def increment_play_count(self, track_id: str) -> None:
        self._tracks[track_id] = self.get_stats(track_id).with_play(self.clock.timestamp())
        self._mark_dirty(StorageKeys.TRACKS)

    def record_session(self, track_id: str, seconds: float, completed: bool = False) -> bool:
        """Count a finished session in today's stats.

        Sessions shorter than five seconds are treated as noise.

        Returns:
            True if the session was counted
        """
        if seconds < MIN_RECORDED_SESSION_SECONDS:
            self.logger.debug(f"Ignoring {seconds:.1f}s session for track {track_id}")
            return False

        today = date_key(self.clock.now())
        self._daily[today] = self._today(today).with_session()
        self._mark_dirty(StorageKeys.DAILY_STATS)

        self.logger.debug(
            f"Recorded {seconds:.1f}s session for track {track_id} (completed={completed})"
        )
        return True

    def mark_track_played(self, track_id: str) -> None:
        """Add the track to today's distinct-track set."""
        today = date_key(self.clock.now())
        day_stats = self._today(today)
        if track_id in day_stats.track_ids:
            return
        self._daily[today] = day_stats.with_track(track_id)
        self._mark_dirty(StorageKeys.DAILY_STATS)

    def save_track_info(self, track: Track, resolved: bool = False) -> None:
        evicted = self.metadata_cache.upsert(track, self.clock.timestamp(), resolved=resolved)
        if evicted:
            self.logger.debug(f"Evicted {len(evicted)} track(s) from metadata cache")
        self._mark_dirty(StorageKeys.TRACK_METADATA_CACHE)

    def get_track_info(self, track_id: str) -> Optional[Track]:
        return self.metadata_cache.get_track(track_id)

    # Queries

    def get_track_details(self, track_id: str) -> dict:
        details = self.get_stats(track_id).to_dict()
        track = self.get_track_info(track_id)
        details["track"] = track.to_dict() if track else None
        return details

    def get_top_tracks(
        self,
        sort_by: str = "play_count",
        limit: int = 10,
        period: PeriodLike = Period.ALL
    ) -> List[TopTrack]:
        """Rank tracks by play count or listening time.

        Args:
            sort_by: ``play_count`` or ``total_seconds`` (camelCase accepted)
            limit: Maximum number of results
            period: Period name or explicit DateRange

        Returns:
            Ranked list joined with cached metadata
        """
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {sorted(set(SORT_FIELDS.values()))}")
        key = SORT_FIELDS[sort_by]

        candidates = self._tracks_in_period(period)
        candidates.sort(key=lambda s: getattr(s, key), reverse=True)

        return [
            TopTrack(stats=stats, track=self.get_track_info(stats.track_id))
            for stats in candidates[:max(limit, 0)]
        ]

    def get_total_stats(self, period: PeriodLike = Period.ALL) -> TotalStats:
        """Sum listening time, tracks, plays and artists over a period.

        Outside the all-time view only the daily buckets inside the range
        contribute seconds.
        """
        all_time = not isinstance(period, DateRange) and Period(period) == Period.ALL
        date_range = resolve_date_range(period, self.clock.now())

        totals = TotalStats()
        artists = set()
        for stats in self._tracks_in_period(period):
            if all_time:
                totals.total_seconds += stats.total_seconds
            else:
                totals.total_seconds += sum(
                    seconds for day, seconds in stats.daily_seconds.items()
                    if date_range.contains_date(day)
                )
            totals.total_tracks += 1
            totals.total_plays += stats.play_count

            track = self.get_track_info(stats.track_id)
            if track and track.artist_id:
                artists.add(track.artist_id)

        totals.total_artists = len(artists)
        return totals

    def get_daily_stats(self, period: PeriodLike = Period.MONTH) -> List[DailyStats]:
        date_range = resolve_date_range(period, self.clock.now())
        days = [stats for day, stats in self._daily.items() if date_range.contains_date(day)]
        return sorted(days, key=lambda d: d.date)

    def get_listening_patterns(self, year: int) -> ListeningPatterns:
        """Fold one calendar year of daily stats into hour/weekday/month buckets."""
        patterns = ListeningPatterns()
        for day, stats in self._daily.items():
            parsed = parse_date_key(day)
            if parsed.year != year:
                continue

            patterns.by_day_of_week[parsed.weekday()] += stats.total_seconds
            patterns.by_month[parsed.month - 1] += stats.total_seconds
            for hour, seconds in stats.hourly_seconds.items():
                patterns.by_hour[hour] += seconds

        return patterns

    # Persistence

    async def persist(self) -> None:
        """Hand every dirty document to the key-value store."""
        self.scheduler.cancel(self.PERSIST_JOB_ID)
        if not self._dirty:
            return

        dirty = set(self._dirty)
        self._dirty.clear()

        documents = {}
        if StorageKeys.TRACKS in dirty:
            documents[StorageKeys.TRACKS] = {tid: s.to_dict() for tid, s in self._tracks.items()}
        if StorageKeys.DAILY_STATS in dirty:
            documents[StorageKeys.DAILY_STATS] = {day: s.to_dict() for day, s in self._daily.items()}
        if StorageKeys.TRACK_METADATA_CACHE in dirty:
            documents[StorageKeys.TRACK_METADATA_CACHE] = self.metadata_cache.to_dict()

        await self.kv.set_many(documents)

    async def flush(self) -> None:
        """Persist everything to the backend now.

        Raises:
            PersistenceWriteFailed: If the backend rejected the write
        """
        await self.persist()
        try:
            await self.kv.flush()
        except PersistenceWriteFailed:
            self.logger.error("Stats flush failed; pending writes kept for retry")
            raise

    def _today(self, today: str) -> DailyStats:
        return self._daily.get(today) or DailyStats(date=today)

    def _mark_dirty(self, *keys: str) -> None:
        self._dirty.update(keys)
        self.scheduler.schedule_once(self.PERSIST_JOB_ID, self.persist, self.persist_delay)

    def _tracks_in_period(self, period: PeriodLike) -> List[TrackStats]:
        if not isinstance(period, DateRange) and Period(period) == Period.ALL:
            return list(self._tracks.values())

        date_range = resolve_date_range(period, self.clock.now())
        return [
            stats for stats in self._tracks.values()
            if (stats.last_played_at is not None and date_range.contains_timestamp(stats.last_played_at))
            or any(date_range.contains_date(day) for day in stats.daily_seconds)
        ]
