"""Tests for the SoundCloud enrichment client."""

import asyncio
import json

import httpx
import pytest

from listening_tracker.core.enrichment import EnrichmentClient, normalize_track
from listening_tracker.core.metadata_cache import TrackMetadataCache
from listening_tracker.core.tracker import SessionTracker
from listening_tracker.errors import EnrichmentUnavailable
from listening_tracker.models.track import Track

TRACK_PAYLOAD = {
    "kind": "track",
    "id": 123456,
    "title": "Night Drive",
    "duration": 215000,
    "genre": "Electronic",
    "permalink": "night-drive",
    "permalink_url": "https://soundcloud.com/some-artist/night-drive",
    "artwork_url": "https://i1.sndcdn.com/artworks-abc-large.jpg",
    "user": {
        "id": 42,
        "username": "Some Artist",
        "permalink": "some-artist",
        "avatar_url": "https://i1.sndcdn.com/avatars-xyz-large.jpg",
    },
}


class Recorder:
    """httpx MockTransport handler that records requests."""

    def __init__(self, status=200, payload=None, raise_exc=None):
        self.status = status
        self.payload = TRACK_PAYLOAD if payload is None else payload
        self.raise_exc = raise_exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_exc is not None:
            raise self.raise_exc
        if isinstance(self.payload, str):
            return httpx.Response(self.status, text=self.payload)
        return httpx.Response(self.status, json=self.payload)


@pytest.fixture
def cache():
    return TrackMetadataCache()


@pytest.fixture
def make_client(cache, clock, logger):
    def _make(handler, client_id="abc123"):
        return EnrichmentClient(
            cache,
            client_id=client_id,
            clock=clock,
            transport=httpx.MockTransport(handler),
            logger=logger,
        )
    return _make


def test_normalize_track():
    track = normalize_track(TRACK_PAYLOAD)

    assert track.id == "123456"
    assert track.artist_id == "42"
    assert track.artist_name == "Some Artist"
    assert track.permalink == "some-artist/night-drive"
    assert track.artwork_url == "https://i1.sndcdn.com/artworks-abc-t500x500.jpg"
    assert track.duration_ms == 215000
    assert track.genre == "Electronic"


def test_normalize_falls_back_to_avatar_and_built_permalink():
    payload = {**TRACK_PAYLOAD, "artwork_url": None, "permalink_url": None}

    track = normalize_track(payload)

    assert track.artwork_url == "https://i1.sndcdn.com/avatars-xyz-t500x500.jpg"
    assert track.permalink == "some-artist/night-drive"


def test_normalize_rejects_non_tracks():
    assert normalize_track({"kind": "playlist", "id": 1}) is None
    assert normalize_track({}) is None


@pytest.mark.asyncio
async def test_numeric_id_uses_tracks_endpoint(make_client):
    recorder = Recorder()
    client = make_client(recorder)

    track = await client.resolve_track("123456")
    await client.close()

    assert track.title == "Night Drive"
    request = recorder.requests[0]
    assert request.url.path == "/tracks/123456"
    assert request.url.params["client_id"] == "abc123"


@pytest.mark.asyncio
async def test_synthetic_id_resolves_permalink(make_client):
    recorder = Recorder()
    client = make_client(recorder)

    track = await client.resolve_track("some-artist-night-drive", permalink="some-artist/night-drive")
    await client.close()

    assert track.id == "123456"
    request = recorder.requests[0]
    assert request.url.path == "/resolve"
    assert request.url.params["url"] == "https://soundcloud.com/some-artist/night-drive"


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_network(make_client, cache, clock):
    cache.upsert(Track(id="123456", title="Cached"), cached_at=clock.timestamp(), resolved=True)
    recorder = Recorder()
    client = make_client(recorder)

    track = await client.resolve_track("123456")

    assert track.title == "Cached"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_fresh_page_data_is_not_a_cache_hit(make_client, cache, clock):
    cache.upsert(Track(id="123456", title="From the page"), cached_at=clock.timestamp())
    recorder = Recorder()
    client = make_client(recorder)

    track = await client.resolve_track("123456")
    await client.close()

    assert track.title == "Night Drive"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_stale_cache_entry_is_refetched(make_client, cache, clock):
    cache.upsert(Track(id="123456", title="Cached"), cached_at=clock.timestamp(), resolved=True)
    clock.advance(2 * 24 * 3600)
    recorder = Recorder()
    client = make_client(recorder)

    track = await client.resolve_track("123456")
    await client.close()

    assert track.title == "Night Drive"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_not_ready_without_client_id(make_client, cache, clock):
    recorder = Recorder()
    client = make_client(recorder, client_id=None)

    assert client.is_ready() is False
    assert await client.resolve_track("123456") is None

    cache.upsert(Track(id="123456", title="Old"), cached_at=0.0, resolved=True)
    assert (await client.resolve_track("123456")).title == "Old"
    assert recorder.requests == []

    client.set_client_id("late-id")
    assert client.is_ready() is True


@pytest.mark.parametrize("recorder", [
    Recorder(status=401),
    Recorder(status=404),
    Recorder(status=500),
    Recorder(payload="<html>not json</html>"),
    Recorder(raise_exc=httpx.ConnectError("refused")),
    Recorder(raise_exc=httpx.ReadTimeout("slow")),
])
@pytest.mark.asyncio
async def test_failures_raise_enrichment_unavailable(make_client, recorder):
    client = make_client(recorder)

    with pytest.raises(EnrichmentUnavailable):
        await client.resolve_track("123456")
    await client.close()


@pytest.mark.asyncio
async def test_response_body_is_parsed_as_json(make_client):
    client = make_client(Recorder(payload=json.dumps({**TRACK_PAYLOAD, "title": "From Text"})))

    track = await client.resolve_track("123456")
    await client.close()

    assert track.title == "From Text"


class TestWithTracker:

    @pytest.fixture
    def wired(self, store, kv, scheduler, clock, logger):
        recorder = Recorder()
        client = EnrichmentClient(
            store.metadata_cache,
            client_id="abc123",
            clock=clock,
            transport=httpx.MockTransport(recorder),
            logger=logger,
        )
        tracker = SessionTracker(store, kv, scheduler, resolver=client, clock=clock, logger=logger)
        return recorder, client, tracker

    @pytest.mark.asyncio
    async def test_new_track_is_fetched_and_merged(self, wired, store):
        recorder, client, tracker = wired

        await tracker.on_track_playing({"id": "123456", "title": "From the page"})
        await asyncio.gather(*tracker._tasks)
        await client.close()

        assert len(recorder.requests) == 1
        assert tracker.session.track.title == "Night Drive"
        assert tracker.session.track.artist_id == "42"
        assert store.metadata_cache.get("123456").resolved is True

    @pytest.mark.asyncio
    async def test_replay_uses_resolved_entry_without_request(self, wired, store, clock):
        recorder, client, tracker = wired
        await tracker.on_track_playing({"id": "123456", "title": "From the page"})
        await asyncio.gather(*tracker._tasks)
        await tracker.on_track_ended()
        cached_at = store.metadata_cache.get("123456").cached_at

        clock.advance(60)
        await tracker.on_track_playing({"id": "123456", "title": "From the page"})
        await asyncio.gather(*tracker._tasks)
        await client.close()

        assert len(recorder.requests) == 1
        assert tracker.session.track.title == "Night Drive"
        assert store.metadata_cache.get("123456").cached_at == cached_at

    @pytest.mark.asyncio
    async def test_resolved_entry_is_refetched_after_ttl(self, wired, clock):
        recorder, client, tracker = wired
        await tracker.on_track_playing({"id": "123456"})
        await asyncio.gather(*tracker._tasks)
        await tracker.on_track_ended()

        clock.advance(2 * 24 * 3600)
        await tracker.on_track_playing({"id": "123456"})
        await asyncio.gather(*tracker._tasks)
        await client.close()

        assert len(recorder.requests) == 2
