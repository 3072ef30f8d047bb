"""Session tracking state machine."""

import asyncio
import logging
from typing import Any, Optional, Protocol, Set

from ..errors import ObservationDataInvalid, PersistenceWriteFailed
from ..models.session import Session, SessionSnapshot, TrackerState
from ..models.track import Track
from ..utils.time import Clock
from .aggregation import AggregationStore
from .kv_store import KeyValueStore, StorageKeys
from .scheduler import TimerScheduler

DEFAULT_TAB = "default"


class TrackResolver(Protocol):
    async def resolve_track(self, track_id: str, permalink: Optional[str] = None) -> Optional[Track]:
        ...


class SessionTracker:
    """Turns playback signals into listening sessions and accrued time.

    The tracker is ``IDLE`` without a session, ``PLAYING`` while the tick
    timer runs and ``PAUSED`` while a session is kept but not ticking.
    Every state change completes synchronously before the handler awaits
    anything, so timer callbacks never observe a half-applied transition.
    """

    TICK_JOB_ID = "tracker-tick"
    SNAPSHOT_JOB_ID = "tracker-snapshot"

    def __init__(
        self,
        store: AggregationStore,
        kv: KeyValueStore,
        scheduler: TimerScheduler,
        resolver: Optional[TrackResolver] = None,
        clock: Optional[Clock] = None,
        tick_interval: float = 1.0,
        max_tick_seconds: float = 2.0,
        play_count_threshold: float = 30.0,
        min_session_seconds: float = 1.0,
        completion_ratio: float = 0.9,
        snapshot_interval: float = 5.0,
        enrichment_timeout: float = 5.0,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the tracker.

        Args:
            store: Aggregation store receiving accrued time and counts
            kv: Key-value store for the session snapshot and settings
            scheduler: Scheduler running the tick and snapshot jobs
            resolver: Optional metadata resolver used for enrichment
            clock: Clock (monotonic for ticks, wall time for timestamps)
            tick_interval: Seconds between ticks
            max_tick_seconds: Upper clamp for one tick's elapsed time
            play_count_threshold: Session seconds after which a play counts
            min_session_seconds: Sessions below this are discarded on close
            completion_ratio: Share of the duration that marks completion
            snapshot_interval: Seconds between periodic snapshot saves
            enrichment_timeout: Seconds to wait for the resolver
            logger: Logger instance
        """
        self.store = store
        self.kv = kv
        self.scheduler = scheduler
        self.resolver = resolver
        self.clock = clock or Clock()
        self.tick_interval = tick_interval
        self.max_tick_seconds = max_tick_seconds
        self.play_count_threshold = play_count_threshold
        self.min_session_seconds = min_session_seconds
        self.completion_ratio = completion_ratio
        self.snapshot_interval = snapshot_interval
        self.enrichment_timeout = enrichment_timeout
        self.logger = logger or logging.getLogger(__name__)

        self._state = TrackerState.IDLE
        self._session: Optional[Session] = None
        self.last_session: Optional[Session] = None
        self._playing_tabs: Set[Any] = set()
        self._last_tick: Optional[float] = None
        self._enabled = True
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def start(self) -> None:
        """Load settings, recover an interrupted session and start saving snapshots."""
        settings = await self.kv.get(StorageKeys.SETTINGS, {}) or {}
        self._enabled = settings.get("tracking_enabled", True) is not False

        await self._recover_snapshot()

        self.scheduler.schedule_interval(self.SNAPSHOT_JOB_ID, self.save_snapshot, self.snapshot_interval)
        self.logger.info(f"Session tracker started (tracking {'enabled' if self._enabled else 'disabled'})")

    async def shutdown(self) -> bool:
        """Close the active session, stop all timers and flush the store.

        Returns:
            True if everything reached the backend
        """
        self.scheduler.cancel(self.SNAPSHOT_JOB_ID)
        await self.close_session()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        try:
            await self.store.flush()
        except PersistenceWriteFailed as e:
            self.logger.error(f"Final flush failed: {e}")
            return False
        return True

    # Observation events

    async def on_track_playing(self, track: Any, tab_id: Any = None) -> None:
        await self._handle_playing(track, tab_id, force_new=False)

    async def on_track_changed(self, track: Any, tab_id: Any = None) -> None:
        await self._handle_playing(track, tab_id, force_new=True)

    async def on_track_paused(self, tab_id: Any = None) -> None:
        self._playing_tabs.discard(self._tab_key(tab_id))
        if self._state is not TrackerState.PLAYING or self._playing_tabs:
            return

        self._accrue()
        self._stop_ticking()
        self._state = TrackerState.PAUSED
        self.logger.debug(f"Paused track {self._session.track_id if self._session else None}")

        await self.save_snapshot()

    async def on_track_ended(self, tab_id: Any = None) -> None:
        self._playing_tabs.discard(self._tab_key(tab_id))
        if self._playing_tabs:
            return
        await self.close_session()

    async def on_tab_closed(self, tab_id: Any) -> None:
        tab = self._tab_key(tab_id)
        if tab not in self._playing_tabs:
            return

        self._playing_tabs.discard(tab)
        if self._playing_tabs:
            return
        await self.close_session()

    async def close_session(self) -> None:
        """Flush the active session and go idle. Safe to call repeatedly."""
        had_session = self._session is not None
        self._finish()
        if had_session:
            await self._replace_snapshot()

    # Timer callbacks

    def tick(self) -> None:
        """Accrue the time elapsed since the previous tick."""
        if not self._enabled or self._state is not TrackerState.PLAYING or self._session is None:
            return
        self._accrue()

    async def save_snapshot(self) -> None:
        session = self._session
        if session is None:
            return
        snapshot = SessionSnapshot.of(session, self._state is TrackerState.PLAYING, self.clock.timestamp())
        await self.kv.set(StorageKeys.CURRENT_SESSION_SNAPSHOT, snapshot.to_dict())

    # Query surface

    def get_status(self) -> dict:
        session = self._session
        return {
            "is_playing": self._state is TrackerState.PLAYING,
            "state": self._state.value,
            "current_track": session.track.to_dict() if session else None,
            "session_seconds": session.session_seconds if session else 0.0,
            "enabled": self._enabled,
        }

    async def set_tracking_enabled(self, enabled: bool) -> None:
        """Turn tracking on or off.

        Disabling closes the active session. Enabling waits for the next
        playing signal. The choice is persisted in ``settings``.
        """
        await self.apply_tracking_enabled(enabled)

        settings = dict(await self.kv.get(StorageKeys.SETTINGS, {}) or {})
        settings["tracking_enabled"] = enabled
        try:
            await self.kv.set(StorageKeys.SETTINGS, settings, immediate=True)
        except PersistenceWriteFailed as e:
            self.logger.warning(f"Tracking setting not persisted: {e}")

    async def apply_tracking_enabled(self, enabled: bool) -> None:
        """Switch tracking on or off without persisting the setting."""
        if enabled == self._enabled:
            return
        if not enabled:
            await self.close_session()
        self._enabled = enabled
        self.logger.info(f"Tracking {'enabled' if enabled else 'disabled'}")

    def apply_enrichment(self, requested: Track, resolved: Track) -> bool:
        """Merge resolved metadata into the current session's track.

        The session keeps its accounting id and counters. Results for a
        track that is no longer current are dropped.

        Returns:
            True if the result was applied
        """
        session = self._session
        if session is None:
            return False
        if not (session.track.same_identity(requested) or session.track.same_identity(resolved)):
            self.logger.debug(f"Dropping enrichment for {requested.id}, session moved on")
            return False

        merged = session.track.merged_with(resolved)
        self._session = session.with_track(merged)

        self._save_resolved(merged)
        if resolved.id != merged.id:
            self._save_resolved(resolved)
        return True

    def _save_resolved(self, track: Track) -> None:
        # An unchanged entry keeps its cached_at so it still expires
        cached = self.store.metadata_cache.get(track.id)
        if cached is None or not cached.resolved or cached.track != track:
            self.store.save_track_info(track, resolved=True)

    # Internals

    async def _handle_playing(self, payload: Any, tab_id: Any, force_new: bool) -> None:
        if not self._enabled:
            self.logger.debug("Tracking disabled, ignoring playing signal")
            return

        try:
            track = Track.from_payload(payload)
        except ObservationDataInvalid as e:
            self.logger.warning(f"Dropping playing signal: {e}")
            return

        if self._apply_playing(track, self._tab_key(tab_id), force_new):
            await self._replace_snapshot()
            self._request_enrichment(track)

    def _apply_playing(self, track: Track, tab: Any, force_new: bool) -> bool:
        session = self._session
        is_new = force_new or session is None or session.track_id != track.id

        if is_new:
            if self._state is TrackerState.PLAYING:
                self._accrue()
            self._close_active()
            cached = self.store.metadata_cache.get(track.id)
            if cached is not None and cached.resolved:
                track = track.merged_with(cached.track)
            else:
                self.store.save_track_info(track)
            self._session = Session(track=track, started_at=self.clock.timestamp())
            self.logger.info(f"Now playing: {track.artist_name} - {track.title} ({track.id})")

        self._playing_tabs.add(tab)

        if self._state is not TrackerState.PLAYING:
            self._state = TrackerState.PLAYING
            self._start_ticking()
        elif is_new:
            self._last_tick = self.clock.monotonic()

        return is_new

    def _accrue(self) -> None:
        session = self._session
        now = self.clock.monotonic()
        if session is None or self._last_tick is None:
            self._last_tick = now
            return

        # Clamp to absorb timer drift and suspended processes
        elapsed = min(max(now - self._last_tick, 0.0), self.max_tick_seconds)
        if elapsed <= 0:
            self._last_tick = max(self._last_tick, now)
            return

        try:
            self.store.add_listening_time(session.track_id, elapsed)
        except Exception as e:
            self.logger.error(f"Accrual for track {session.track_id} failed: {e}", exc_info=True)
            return

        self._last_tick = now
        session = session.accrue(elapsed)

        try:
            self.store.mark_track_played(session.track_id)
            if not session.has_counted_play and session.session_seconds >= self.play_count_threshold:
                self.store.increment_play_count(session.track_id)
                session = session.counted()
                self.logger.info(f"Counted play for track {session.track_id}")
        except Exception as e:
            self.logger.error(f"Play bookkeeping for track {session.track_id} failed: {e}", exc_info=True)

        self._session = session

    def _finish(self) -> None:
        if self._state is TrackerState.PLAYING:
            self._accrue()
        self._stop_ticking()
        self._close_active()
        self._playing_tabs.clear()
        self._state = TrackerState.IDLE

    def _close_active(self) -> Optional[Session]:
        session = self._session
        self._session = None
        if session is None or session.flushed:
            return None

        if session.session_seconds < self.min_session_seconds:
            self.logger.debug(f"Discarding {session.session_seconds:.2f}s session for track {session.track_id}")
            return None

        closed = session.closed(self.completion_ratio)
        self.last_session = closed
        try:
            self.store.record_session(closed.track_id, closed.session_seconds, closed.completed)
        except Exception as e:
            self.logger.error(f"Recording session for track {closed.track_id} failed: {e}", exc_info=True)
        return closed

    def _start_ticking(self) -> None:
        self._last_tick = self.clock.monotonic()
        self.scheduler.schedule_interval(self.TICK_JOB_ID, self.tick, self.tick_interval)

    def _stop_ticking(self) -> None:
        self.scheduler.cancel(self.TICK_JOB_ID)
        self._last_tick = None

    def _request_enrichment(self, track: Track) -> None:
        if self.resolver is None:
            return
        task = asyncio.get_running_loop().create_task(self._enrich(track))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _enrich(self, track: Track) -> None:
        try:
            resolved = await asyncio.wait_for(
                self.resolver.resolve_track(track.id, track.permalink),
                timeout=self.enrichment_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.debug(f"Enrichment unavailable for track {track.id}: {e}")
            return

        if resolved is not None:
            self.apply_enrichment(track, resolved)

    async def _recover_snapshot(self) -> None:
        raw = await self.kv.get(StorageKeys.CURRENT_SESSION_SNAPSHOT)
        try:
            snapshot = SessionSnapshot.from_dict(raw)
        except (ObservationDataInvalid, TypeError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable session snapshot: {e}")
            snapshot = None

        if snapshot is not None and snapshot.session_seconds >= self.min_session_seconds:
            session = Session(
                track=snapshot.track,
                started_at=snapshot.saved_at - snapshot.session_seconds,
                session_seconds=snapshot.session_seconds,
                has_counted_play=snapshot.has_counted_play,
            ).closed(self.completion_ratio)
            self.store.record_session(session.track_id, session.session_seconds, session.completed)
            self.logger.info(
                f"Recovered interrupted {session.session_seconds:.0f}s session for track {session.track_id}"
            )
            await self._replace_snapshot()
            try:
                await self.kv.flush()
            except PersistenceWriteFailed as e:
                self.logger.warning(f"Recovered session not persisted yet: {e}")
        elif raw is not None:
            await self.kv.remove(StorageKeys.CURRENT_SESSION_SNAPSHOT)

    async def _replace_snapshot(self) -> None:
        """Queue pending stats and the current snapshot as one write batch.

        A closed session's record and the removal of its snapshot reach the
        backend together, so a restart never recovers a recorded session.
        """
        await self.store.persist()
        if self._session is None:
            await self.kv.remove(StorageKeys.CURRENT_SESSION_SNAPSHOT, immediate=False)
        else:
            await self.save_snapshot()

    @staticmethod
    def _tab_key(tab_id: Any) -> Any:
        return DEFAULT_TAB if tab_id is None else tab_id
