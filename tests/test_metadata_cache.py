"""Tests for the bounded track metadata cache."""

import pytest

from listening_tracker.core.metadata_cache import TrackMetadataCache
from listening_tracker.models.track import Track


def test_capacity_plus_one_evicts_oldest():
    cache = TrackMetadataCache(capacity=3)
    cache.upsert(Track(id="b"), cached_at=20.0)
    cache.upsert(Track(id="a"), cached_at=10.0)
    cache.upsert(Track(id="c"), cached_at=30.0)

    evicted = cache.upsert(Track(id="d"), cached_at=40.0)

    assert evicted == ["a"]
    assert len(cache) == 3
    assert "a" not in cache


def test_refresh_moves_entry_out_of_eviction_order():
    cache = TrackMetadataCache(capacity=2)
    cache.upsert(Track(id="a"), cached_at=1.0)
    cache.upsert(Track(id="b"), cached_at=2.0)
    cache.upsert(Track(id="a", title="Updated"), cached_at=3.0)

    cache.upsert(Track(id="c"), cached_at=4.0)

    assert sorted(entry.track.id for entry in cache) == ["a", "c"]
    assert cache.get_track("a").title == "Updated"


def test_find_by_permalink():
    cache = TrackMetadataCache()
    cache.upsert(Track(id="123", permalink="artist/song"), cached_at=1.0)

    assert cache.find_by_permalink("artist/song").track.id == "123"
    assert cache.find_by_permalink("artist/other") is None


def test_load_round_trip_and_skips_bad_records():
    cache = TrackMetadataCache(capacity=2)
    cache.upsert(Track(id="1", title="One"), cached_at=1.0)
    cache.upsert(Track(id="2", title="Two"), cached_at=2.0, resolved=True)

    data = cache.to_dict()
    data["bad"] = {"title": "no id", "cached_at": 3.0}

    restored = TrackMetadataCache(capacity=2)
    restored.load(data)

    assert len(restored) == 2
    assert restored.get("2").cached_at == 2.0
    assert restored.get_track("1").title == "One"
    assert restored.get("2").resolved is True
    assert restored.get("1").resolved is False


def test_load_trims_to_capacity():
    data = {str(i): {"id": str(i), "cached_at": float(i)} for i in range(5)}

    cache = TrackMetadataCache(capacity=2)
    cache.load(data)

    assert sorted(entry.track.id for entry in cache) == ["3", "4"]


@pytest.mark.parametrize("now,fresh", [(100.0, True), (159.0, True), (160.0, False)])
def test_freshness(now, fresh):
    cache = TrackMetadataCache()
    cache.upsert(Track(id="1"), cached_at=100.0)

    assert cache.get("1").is_fresh(now, ttl_seconds=60) is fresh


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        TrackMetadataCache(capacity=0)
