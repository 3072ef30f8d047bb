"""Main background service for the listening tracker."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, List, Optional, Set, Union

from .config.database import SqliteBackend, StorageBackend
from .config.settings import Settings
from .core.aggregation import AggregationStore, PeriodLike
from .core.enrichment import EnrichmentClient
from .core.events import EventDispatcher, JsonLinesEventSource
from .core.kv_store import KeyValueStore, StorageKeys
from .core.migrations import reset_all_data, run_migrations
from .core.recap import RecapGenerator
from .core.scheduler import TimerScheduler
from .core.tracker import SessionTracker
from .errors import PersistenceWriteFailed
from .models.session import TrackerState
from .models.stats import DailyStats, ListeningPatterns, TopTrack, TotalStats
from .utils.logger import setup_logger
from .utils.platform import is_windows
from .utils.time import Clock, Period


class ListeningTrackerService:
    """Wires storage, aggregation, tracking and enrichment on one event loop."""

    FLUSH_JOB_ID = "stats-flush"
    SETTINGS_JOB_ID = "settings-refresh"

    def __init__(
        self,
        config_path: Optional[Path] = None,
        settings: Optional[Settings] = None,
        backend: Optional[StorageBackend] = None,
        scheduler: Optional[TimerScheduler] = None,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the service.

        Args:
            config_path: Path to configuration file (optional)
            settings: Settings to use instead of loading them
            backend: Storage backend (SQLite at the configured path if None)
            scheduler: Timer scheduler (a fresh one if None)
            clock: Clock shared by every component
            logger: Logger (configured from settings if None)
        """
        self.running = False
        self.config_path = config_path
        self.settings = settings or Settings.from_file_or_default(config_path)

        self.logger = logger or setup_logger(
            log_file=self.settings.logging.path,
            level=self.settings.logging.level,
            max_size_mb=self.settings.logging.max_size_mb,
            backup_count=self.settings.logging.backup_count,
            console=True
        )

        self.clock = clock or Clock()
        self.scheduler = scheduler or TimerScheduler(logger=self.logger)
        self.backend = backend or SqliteBackend(
            self.settings.storage.path,
            quota_bytes=self.settings.storage.quota_bytes,
            logger=self.logger
        )

        self.kv = KeyValueStore(
            self.backend,
            self.scheduler,
            write_delay=self.settings.storage.write_delay_seconds,
            logger=self.logger
        )
        self.store = AggregationStore(
            self.kv,
            self.scheduler,
            clock=self.clock,
            persist_delay=self.settings.stats.persist_delay_seconds,
            metadata_capacity=self.settings.stats.metadata_cache_size,
            logger=self.logger
        )

        enrichment = self.settings.enrichment
        self.enrichment: Optional[EnrichmentClient] = None
        if enrichment.enabled:
            self.enrichment = EnrichmentClient(
                self.store.metadata_cache,
                client_id=enrichment.client_id,
                api_url=enrichment.api_url,
                site_url=enrichment.site_url,
                timeout_seconds=enrichment.timeout_seconds,
                cache_ttl_seconds=enrichment.cache_ttl_hours * 3600,
                clock=self.clock,
                logger=self.logger
            )

        tracker = self.settings.tracker
        self.tracker = SessionTracker(
            self.store,
            self.kv,
            self.scheduler,
            resolver=self.enrichment,
            clock=self.clock,
            tick_interval=tracker.tick_interval_seconds,
            max_tick_seconds=tracker.max_tick_seconds,
            play_count_threshold=tracker.play_count_threshold_seconds,
            min_session_seconds=tracker.min_session_seconds,
            completion_ratio=tracker.completion_ratio,
            snapshot_interval=tracker.snapshot_interval_seconds,
            enrichment_timeout=enrichment.timeout_seconds,
            logger=self.logger
        )
        self.recaps = RecapGenerator(self.store, self.kv, clock=self.clock, logger=self.logger)
        self.dispatcher = EventDispatcher(self.tracker, on_client_id=self.set_client_id, logger=self.logger)

        self._stop_event: Optional[asyncio.Event] = None
        self._unsubscribe_settings = None
        self._tracking_started = False
        self._saved_session: Optional[dict] = None
        self._tasks: Set[asyncio.Task] = set()

    # Lifecycle

    async def open(self, track: bool = True) -> None:
        """Load persisted state and start the timers.

        Args:
            track: Start the session tracker (False for read-only queries)
        """
        self.scheduler.start()
        await run_migrations(self.kv, logger=self.logger)
        await self.store.load()

        stored_settings = await self.kv.get(StorageKeys.SETTINGS, {}) or {}
        await self.tracker.apply_tracking_enabled(_tracking_enabled(stored_settings))
        self._apply_settings(stored_settings, StorageKeys.SETTINGS)
        self._unsubscribe_settings = self.kv.subscribe(StorageKeys.SETTINGS, self._apply_settings)

        if track:
            await self.tracker.start()
            self.scheduler.schedule_interval(
                self.FLUSH_JOB_ID,
                self._periodic_flush,
                self.settings.stats.flush_interval_minutes * 60
            )
            self.scheduler.schedule_interval(
                self.SETTINGS_JOB_ID,
                self._refresh_settings,
                self.settings.tracker.settings_refresh_seconds
            )
            self._tracking_started = True
        else:
            # Last state saved by a tracking process, if one is running
            self._saved_session = await self.kv.get(StorageKeys.CURRENT_SESSION_SNAPSHOT)

        self.running = True
        self.logger.info("Listening tracker ready")

    async def close(self) -> bool:
        """Flush everything and stop the timers.

        Returns:
            True if every pending write reached the backend
        """
        if not self.running:
            return True

        self.logger.info("Shutting down service...")
        self.running = False
        self.scheduler.cancel(self.FLUSH_JOB_ID)
        self.scheduler.cancel(self.SETTINGS_JOB_ID)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._tracking_started:
            flushed = await self.tracker.shutdown()
            self._tracking_started = False
        else:
            flushed = await self._flush_quietly()

        if self.enrichment is not None:
            await self.enrichment.close()
        if self._unsubscribe_settings is not None:
            self._unsubscribe_settings()
            self._unsubscribe_settings = None

        self.kv.close()
        await self.scheduler.stop()

        if flushed:
            self.logger.info("Service stopped")
        else:
            self.logger.error("Service stopped with unsaved changes")
        return flushed

    async def __aenter__(self) -> 'ListeningTrackerService':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def run(self, source: Optional[JsonLinesEventSource] = None) -> bool:
        """Track listening until the source is exhausted or a stop signal arrives.

        Args:
            source: Event source; without one the service idles until stopped

        Returns:
            True if the final flush succeeded
        """
        self._stop_event = asyncio.Event()
        self.setup_signal_handlers()

        await self.open()
        self.logger.info("Service started successfully")

        consumer = None
        if source is not None:
            consumer = asyncio.create_task(self._consume(source))
        stopper = asyncio.create_task(self._stop_event.wait())

        try:
            waiting = [stopper] if consumer is None else [stopper, consumer]
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (consumer, stopper):
                if task is not None and not task.done():
                    task.cancel()
            if consumer is not None and consumer.done() and not consumer.cancelled() and consumer.exception():
                self.logger.error(f"Event source failed: {consumer.exception()}")

        return await self.close()

    def request_stop(self) -> None:
        if self._stop_event is not None and not self._stop_event.is_set():
            self.logger.info("Stop requested")
            self._stop_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        # Windows has no loop signal handlers and uses SIGBREAK instead of SIGTERM
        signals = [signal.SIGINT, signal.SIGBREAK if is_windows() else signal.SIGTERM]
        for signum in signals:
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except NotImplementedError:
                signal.signal(signum, lambda s, f: loop.call_soon_threadsafe(self.request_stop))

    # Query surface

    def get_status(self) -> dict:
        """Report the tracker state.

        A read-only service reports the session last saved by the tracking
        process instead, with ``saved_at`` set to when it was saved.
        """
        status = self.tracker.get_status()
        status["enrichment_ready"] = bool(self.enrichment and self.enrichment.is_ready())
        status["saved_at"] = None

        snapshot = self._saved_session
        if not self._tracking_started and snapshot and snapshot.get("track"):
            playing = bool(snapshot.get("is_playing"))
            status.update({
                "is_playing": playing,
                "state": TrackerState.PLAYING.value if playing else TrackerState.PAUSED.value,
                "current_track": snapshot["track"],
                "session_seconds": float(snapshot.get("session_seconds") or 0.0),
                "saved_at": snapshot.get("saved_at"),
            })
        return status

    def get_top_tracks(
        self,
        sort_by: str = "play_count",
        limit: int = 10,
        period: PeriodLike = Period.ALL
    ) -> List[TopTrack]:
        return self.store.get_top_tracks(sort_by=sort_by, limit=limit, period=period)

    def get_total_stats(self, period: PeriodLike = Period.ALL) -> TotalStats:
        return self.store.get_total_stats(period)

    def get_daily_stats(self, period: PeriodLike = Period.MONTH) -> List[DailyStats]:
        return self.store.get_daily_stats(period)

    def get_listening_patterns(self, year: Optional[int] = None) -> ListeningPatterns:
        return self.store.get_listening_patterns(year or self.clock.now().year)

    def get_track_details(self, track_id: str) -> dict:
        return self.store.get_track_details(track_id)

    async def generate_recap(self, year: Optional[int] = None) -> dict:
        recap = await self.recaps.generate_and_save(year or self.clock.now().year)
        return recap.to_dict()

    async def get_storage_usage(self) -> Optional[dict]:
        return await self.kv.get_usage()

    async def set_tracking_enabled(self, enabled: bool) -> None:
        await self.tracker.set_tracking_enabled(enabled)

    async def set_client_id(self, client_id: str) -> None:
        """Remember an API client id discovered by an observer."""
        if self.enrichment is not None and self.enrichment.client_id == client_id:
            return

        settings = dict(await self.kv.get(StorageKeys.SETTINGS, {}) or {})
        settings["client_id"] = client_id
        await self.kv.set(StorageKeys.SETTINGS, settings)
        self._apply_settings(settings, StorageKeys.SETTINGS)

    async def dispatch_message(self, message: Any) -> bool:
        return await self.dispatcher.dispatch_message(message)

    async def reset_data(self) -> None:
        """Delete all listening data; settings survive.

        Raises:
            PersistenceWriteFailed: If the backend rejected the removal
        """
        await self.tracker.close_session()
        await reset_all_data(self.kv, logger=self.logger)
        await self.store.load()
        self._saved_session = None

    # Internals

    async def _consume(self, source: JsonLinesEventSource) -> None:
        async for event in source:
            await self.dispatcher.dispatch(event)
        self.logger.info(f"Event source exhausted after {self.dispatcher.dispatched} event(s)")

    async def _periodic_flush(self) -> None:
        await self._flush_quietly()

    async def _flush_quietly(self) -> bool:
        try:
            await self.store.flush()
        except PersistenceWriteFailed as e:
            self.logger.warning(f"Flush failed, will retry: {e}")
            return False
        return True

    async def _refresh_settings(self) -> None:
        await self.kv.refresh(StorageKeys.SETTINGS)

    def _apply_settings(self, value: Union[dict, None], key: str) -> None:
        value = value or {}
        client_id = value.get("client_id")
        if client_id and self.enrichment is not None and self.enrichment.client_id != client_id:
            self.enrichment.set_client_id(client_id)
            self.logger.info("Enrichment client id updated")

        enabled = _tracking_enabled(value)
        if enabled != self.tracker.enabled:
            self._spawn(self.tracker.apply_tracking_enabled(enabled))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _tracking_enabled(settings: dict) -> bool:
    return settings.get("tracking_enabled", True) is not False


def main():
    """Main entry point."""
    service = ListeningTrackerService()
    asyncio.run(service.run(JsonLinesEventSource(sys.stdin, logger=service.logger)))


if __name__ == "__main__":
    main()
