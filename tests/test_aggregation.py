"""Tests for the aggregation store."""

from datetime import datetime

import pytest

from listening_tracker.core.aggregation import AggregationStore
from listening_tracker.core.kv_store import StorageKeys
from listening_tracker.errors import PersistenceWriteFailed
from listening_tracker.models.track import Track
from listening_tracker.utils.time import DateRange, Period


def test_get_stats_returns_zero_record(store):
    stats = store.get_stats("unknown")

    assert stats.play_count == 0
    assert stats.total_seconds == 0
    assert stats.daily_seconds == {}


def test_add_listening_time_updates_track_and_day(store):
    store.add_listening_time("1", 1.5)
    store.add_listening_time("1", 2.0)

    stats = store.get_stats("1")
    assert stats.total_seconds == pytest.approx(3.5)
    assert stats.daily_seconds == {"2024-03-14": pytest.approx(3.5)}
    assert stats.first_played_at is not None

    day = store.get_day("2024-03-14")
    assert day.total_seconds == pytest.approx(3.5)
    assert day.hourly_seconds == {10: pytest.approx(3.5)}


@pytest.mark.parametrize("seconds", [0, -1, -0.5])
def test_add_listening_time_ignores_non_positive(store, seconds):
    store.add_listening_time("1", seconds)

    assert store.get_day("2024-03-14") is None
    assert store.get_stats("1").total_seconds == 0


def test_record_session_below_floor_is_ignored(store):
    assert store.record_session("1", 3, False) is False
    assert store.get_day("2024-03-14") is None

    assert store.record_session("1", 5, True) is True
    assert store.get_day("2024-03-14").sessions_count == 1


def test_mark_track_played_is_idempotent_per_day(store, clock):
    store.mark_track_played("1")
    store.mark_track_played("1")
    store.mark_track_played("2")
    assert store.get_day("2024-03-14").tracks_played == 2

    clock.set(datetime(2024, 3, 15, 9, 0))
    store.mark_track_played("1")
    assert store.get_day("2024-03-15").tracks_played == 1


def test_increment_play_count(store):
    store.increment_play_count("1")
    store.increment_play_count("1")

    stats = store.get_stats("1")
    assert stats.play_count == 2
    assert stats.last_played_at is not None


def test_track_details_join_metadata(store):
    store.save_track_info(Track(id="1", title="Song", artist_name="Artist"))
    store.add_listening_time("1", 10)

    details = store.get_track_details("1")
    assert details["total_seconds"] == 10
    assert details["track"]["title"] == "Song"
    assert store.get_track_details("missing")["track"] is None


class TestPeriods:

    @pytest.fixture
    def seeded(self, store, clock):
        for moment, seconds in [
            (datetime(2023, 12, 31, 20, 0), 100),
            (datetime(2024, 1, 1, 12, 0), 200),
            (datetime(2024, 1, 2, 8, 0), 300),
        ]:
            clock.set(moment)
            store.add_listening_time("1", seconds)
        clock.set(datetime(2024, 1, 2, 18, 0))
        return store

    def test_total_stats_today_counts_only_today(self, seeded):
        totals = seeded.get_total_stats("today")

        assert totals.total_seconds == 300
        assert totals.total_tracks == 1

    def test_total_stats_all_counts_lifetime(self, seeded):
        assert seeded.get_total_stats(Period.ALL).total_seconds == 600

    def test_total_stats_yesterday(self, seeded):
        assert seeded.get_total_stats(Period.YESTERDAY).total_seconds == 200

    def test_total_stats_year(self, seeded):
        assert seeded.get_total_stats(Period.YEAR).total_seconds == 500

    def test_total_stats_explicit_range(self, seeded):
        assert seeded.get_total_stats(DateRange.for_year(2023)).total_seconds == 100

    def test_daily_stats_sorted_by_date(self, seeded):
        days = seeded.get_daily_stats(Period.WEEK)

        assert [d.date for d in days] == ["2023-12-31", "2024-01-01", "2024-01-02"]

    def test_unknown_period_raises(self, seeded):
        with pytest.raises(ValueError):
            seeded.get_total_stats("fortnight")


class TestTopTracks:

    @pytest.fixture
    def ranked(self, store):
        store.save_track_info(Track(id="1", title="One", artist_id="a"))
        store.save_track_info(Track(id="2", title="Two", artist_id="a"))
        store.save_track_info(Track(id="3", title="Three", artist_id="b"))

        store.add_listening_time("1", 50)
        store.add_listening_time("2", 500)
        store.add_listening_time("3", 100)
        for track_id, plays in [("1", 5), ("2", 1), ("3", 3)]:
            for _ in range(plays):
                store.increment_play_count(track_id)
        return store

    def test_sorted_by_play_count(self, ranked):
        top = ranked.get_top_tracks(sort_by="play_count")

        assert [t.stats.track_id for t in top] == ["1", "3", "2"]
        assert top[0].track.title == "One"

    def test_sorted_by_seconds_with_limit(self, ranked):
        top = ranked.get_top_tracks(sort_by="totalSeconds", limit=2)

        assert [t.stats.track_id for t in top] == ["2", "3"]

    def test_invalid_sort_field(self, ranked):
        with pytest.raises(ValueError):
            ranked.get_top_tracks(sort_by="title")

    def test_total_artists(self, ranked):
        totals = ranked.get_total_stats()

        assert totals.total_artists == 2
        assert totals.total_plays == 9


def test_listening_patterns(store, clock):
    clock.set(datetime(2024, 1, 1, 8, 30))   # Monday
    store.add_listening_time("1", 60)
    clock.set(datetime(2024, 3, 16, 22, 0))  # Saturday
    store.add_listening_time("1", 30)
    clock.set(datetime(2023, 6, 1, 8, 0))
    store.add_listening_time("1", 1000)

    patterns = store.get_listening_patterns(2024)

    assert patterns.by_hour[8] == 60
    assert patterns.by_hour[22] == 30
    assert patterns.by_day_of_week[0] == 60
    assert patterns.by_day_of_week[5] == 30
    assert patterns.by_month[0] == 60
    assert patterns.by_month[2] == 30
    assert sum(patterns.by_month) == 90


class TestPersistence:

    @pytest.mark.asyncio
    async def test_mutations_schedule_one_persist(self, store, scheduler, backend):
        store.add_listening_time("1", 5)
        store.increment_play_count("1")

        assert scheduler.has_job(AggregationStore.PERSIST_JOB_ID)
        assert backend.write_count == 0

        await scheduler.run_pending()

        assert backend.write_count == 1
        assert set(backend.data) == {StorageKeys.TRACKS, StorageKeys.DAILY_STATS}

    @pytest.mark.asyncio
    async def test_flush_round_trips_through_load(self, store, kv, scheduler, clock, backend, logger):
        store.save_track_info(Track(id="1", title="Song", artist_id="a"))
        store.add_listening_time("1", 42)
        store.record_session("1", 42, False)
        store.mark_track_played("1")

        await store.flush()
        assert not scheduler.has_job(AggregationStore.PERSIST_JOB_ID)

        kv.clear_cache()
        reloaded = AggregationStore(kv, scheduler, clock=clock, logger=logger)
        await reloaded.load()

        assert reloaded.get_stats("1").total_seconds == 42
        day = reloaded.get_day("2024-03-14")
        assert day.sessions_count == 1
        assert day.track_ids == frozenset({"1"})
        assert reloaded.get_track_info("1").title == "Song"

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_data_for_retry(self, store, backend):
        store.add_listening_time("1", 5)
        backend.fail_writes = True

        with pytest.raises(PersistenceWriteFailed):
            await store.flush()

        backend.fail_writes = False
        await store.flush()
        assert backend.data[StorageKeys.TRACKS]

    @pytest.mark.asyncio
    async def test_load_skips_unreadable_records(self, store, kv):
        await kv.set_many({
            StorageKeys.TRACKS: {
                "1": {"track_id": "1", "total_seconds": 10, "daily_seconds": {"2024-03-14": 10}},
                "2": {"play_count": 3},
            },
            StorageKeys.DAILY_STATS: {"2024-03-14": {"date": "2024-03-14", "total_seconds": 10}},
        }, immediate=True)

        await store.load()

        assert store.get_stats("1").total_seconds == 10
        assert store.get_stats("2").play_count == 0
