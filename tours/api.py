"""
Tour API client — the remote source behind the tour cache.

  POST {base_url}/getTour    {"place_id", "tour_type"}   -> tour data
  POST {base_url}/getPlaces  {"lat", "lng", "radius", ...} -> nearby places

Identical requests already in flight share one task, so a prefill sweep and
an on-demand tap for the same place only hit the API once.  The client does
not retry; failures surface as TourSourceError and the cache turns them into
misses.

Usage:
    client = TourApiClient(cfg("api", "base_url"), token=os.getenv("TOURS_API_TOKEN"))
    tour = await client.fetch("ChIJ...", "history")
    url = audio_url(tour)
    await client.close()
"""

import asyncio
import json
import logging

import aiohttp

from .lib.errors import NoPlayableAudioError, TourNotFoundError, TourSourceError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15  # seconds
DEFAULT_TITLE = "Audio Tour"


def audio_url(tour: dict | None) -> str:
    """Playable audio URL of a tour response, or NoPlayableAudioError."""
    if tour:
        audio = (tour.get("tour") or {}).get("audio") or {}
        url = audio.get("cloudfront_url") or tour.get("audio_url")
        if url:
            return url
    raise NoPlayableAudioError()


def place_name(tour: dict | None) -> str:
    place_info = ((tour or {}).get("tour") or {}).get("place_info") or {}
    return place_info.get("place_name") or DEFAULT_TITLE


class TourApiClient:
    """aiohttp client for the tour backend."""

    def __init__(self, base_url: str, token: str | None = None, *,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._pending: dict[str, asyncio.Task] = {}

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    # ── Endpoints ──

    async def fetch(self, place_id: str, tour_type: str = "history") -> dict:
        """Complete tour data for a place (place info, photos, script, audio)."""
        body = {"place_id": place_id, "tour_type": tour_type}
        try:
            return await self._dedup(f"tour_{place_id}_{tour_type}", "/getTour", body)
        except TourSourceError as e:
            if e.status == 404 or "not found" in str(e).lower():
                raise TourNotFoundError(place_id) from e
            raise

    async def get_places(self, lat: float, lng: float, radius: int = 500,
                         tour_type: str = "history", max_results: int = 5) -> dict:
        """Places near a location."""
        body = {
            "lat": lat,
            "lng": lng,
            "radius": radius,
            "tour_type": tour_type,
            "max_results": max_results,
        }
        return await self._dedup(
            f"places_{lat}_{lng}_{radius}_{tour_type}", "/getPlaces", body)

    # ── Plumbing ──

    async def _dedup(self, key: str, endpoint: str, body: dict) -> dict:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._request(endpoint, body))
            self._pending[key] = task
            task.add_done_callback(lambda _t: self._pending.pop(key, None))
        return await asyncio.shield(task)

    async def _request(self, endpoint: str, body: dict) -> dict:
        if not self.token:
            raise TourSourceError("Authentication required: no API token configured", status=401)
        headers = {"Content-Type": "application/json", "Authorization": self.token}
        url = f"{self.base_url}{endpoint}"
        try:
            async with self._get_session().post(
                url, json=body, headers=headers, timeout=self.timeout,
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TourSourceError(_error_message(resp.status, text), status=resp.status)
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("API %s failed: %s", endpoint, e)
            raise TourSourceError(f"Request to {endpoint} failed: {e}") from e


def _error_message(status: int, text: str) -> str:
    try:
        payload = json.loads(text)
        message = payload.get("message") or payload.get("error")
        if message:
            return message
    except (ValueError, AttributeError):
        pass
    return f"Request failed with status {status}: {text}"
