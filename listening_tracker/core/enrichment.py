"""Track metadata enrichment through the SoundCloud api-v2 HTTP API."""

import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import httpx

from ..errors import EnrichmentUnavailable
from ..models.track import Track
from ..utils.time import Clock
from .metadata_cache import TrackMetadataCache

DEFAULT_API_URL = "https://api-v2.soundcloud.com"
DEFAULT_SITE_URL = "https://soundcloud.com"


def _large_artwork(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.replace("-large", "-t500x500")


def normalize_track(payload: Mapping[str, Any]) -> Optional[Track]:
    """Convert an API track object into a Track.

    Returns:
        Track, or None if the payload is not a track
    """
    if not payload or payload.get("kind", "track") != "track" or payload.get("id") is None:
        return None

    user = payload.get("user") or {}
    permalink_url = payload.get("permalink_url")
    if permalink_url:
        permalink = urlparse(permalink_url).path.lstrip("/")
    elif user.get("permalink") and payload.get("permalink"):
        permalink = f"{user['permalink']}/{payload['permalink']}"
    else:
        permalink = None

    return Track(
        id=str(payload["id"]),
        title=payload.get("title") or "Unknown Track",
        artist_id=str(user["id"]) if user.get("id") is not None else None,
        artist_name=user.get("username") or "Unknown Artist",
        artwork_url=_large_artwork(payload.get("artwork_url") or user.get("avatar_url")),
        duration_ms=payload.get("duration") or None,
        permalink=permalink,
        genre=payload.get("genre") or None,
    )


class EnrichmentClient:
    """Resolves sparse track identity into full metadata.

    Fresh API-resolved entries of the metadata cache are served without a
    request. The client is only "ready" once a client id is known; until then
    it answers from the cache alone.
    """

    def __init__(
        self,
        metadata_cache: TrackMetadataCache,
        client_id: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        site_url: str = DEFAULT_SITE_URL,
        timeout_seconds: float = 5.0,
        cache_ttl_seconds: float = 24 * 60 * 60,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize the client.

        Args:
            metadata_cache: Cache consulted before any request
            client_id: API client id
            api_url: API base URL
            site_url: Public site URL used to resolve permalinks
            timeout_seconds: Per-request timeout
            cache_ttl_seconds: Age after which cached entries are re-fetched
            clock: Clock used for cache freshness
            transport: Optional httpx transport (tests)
            logger: Logger instance
        """
        self.metadata_cache = metadata_cache
        self.client_id = client_id
        self.api_url = api_url.rstrip("/")
        self.site_url = site_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_ready(self) -> bool:
        return bool(self.client_id)

    def set_client_id(self, client_id: str) -> None:
        if client_id:
            self.client_id = client_id

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def resolve_track(self, track_id: str, permalink: Optional[str] = None) -> Optional[Track]:
        """Resolve full metadata for a track.

        Args:
            track_id: Track id (numeric API id or a synthetic page id)
            permalink: ``artist/track`` path, used when the id is synthetic

        Returns:
            Resolved Track, or None when nothing is known

        Raises:
            EnrichmentUnavailable: If the API request failed
        """
        cached = self.metadata_cache.get(track_id)
        if (cached is None or not cached.resolved) and permalink:
            cached = self.metadata_cache.find_by_permalink(permalink) or cached
        if cached is not None and not cached.resolved:
            # Only API results count as cache hits
            cached = None

        if cached and cached.is_fresh(self.clock.timestamp(), self.cache_ttl_seconds):
            return cached.track

        if not self.is_ready():
            self.logger.debug(f"Enrichment client not ready, using cache for track {track_id}")
            return cached.track if cached else None

        if track_id.isdigit():
            payload = await self._request(f"/tracks/{track_id}")
        elif permalink:
            payload = await self._request("/resolve", {"url": f"{self.site_url}/{permalink}"})
        else:
            return cached.track if cached else None

        return normalize_track(payload)

    async def _request(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        query = {"client_id": self.client_id, **(params or {})}
        try:
            response = await self._http().get(path, params=query)
        except httpx.TimeoutException as e:
            raise EnrichmentUnavailable(f"Request to {path} timed out") from e
        except httpx.HTTPError as e:
            raise EnrichmentUnavailable(f"Request to {path} failed: {e}") from e

        if response.status_code == 401:
            raise EnrichmentUnavailable("API rejected the client id (401)")
        if response.status_code >= 400:
            raise EnrichmentUnavailable(f"API error {response.status_code} for {path}")

        try:
            return response.json()
        except ValueError as e:
            raise EnrichmentUnavailable(f"Undecodable response for {path}") from e

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client
