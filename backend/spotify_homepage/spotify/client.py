from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

import httpx

from ..core.config import Settings

API_BASE = "https://api.spotify.com/v1"
TOKEN_ENDPOINT = "https://accounts.spotify.com/api/token"

logger = logging.getLogger("spotify.client")


class SpotifyClientError(Exception):
    pass


class SpotifyAuthError(SpotifyClientError):
    pass


class SpotifyRateLimitError(SpotifyClientError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(slots=True)
class SpotifyClient:
    access_token: str
    timeout: float = 15.0
    retries: int = 3
    max_retry_after: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None
    _client: httpx.AsyncClient | None = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=API_BASE,
            headers={"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self.transport,
        )

    @classmethod
    def from_settings(cls, access_token: str, settings: Settings, **kwargs: Any) -> "SpotifyClient":
        return cls(access_token=access_token, timeout=settings.http_timeout_seconds, retries=settings.http_retries, **kwargs)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SpotifyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _classify(self, method: str, url: str, response: httpx.Response) -> Dict[str, Any] | None:
        """Payload of a usable response, ``None`` for a rate-limited one; raises on anything else."""
        status = response.status_code
        if status == 429:
            return None
        if status == 401:
            raise SpotifyAuthError("spotify token unauthorized")
        if status >= 400:
            logger.error("Spotify API %s %s -> %s %s", method, url, status, response.text)
            raise SpotifyClientError(f"spotify api error {status}: {response.text}")
        return response.json() if response.content else {}

    async def _request(self, method: str, url: str, *, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        if self._client is None:
            raise SpotifyClientError("spotify client not initialized")
        path = url.lstrip("/")
        retry_after: float | None = None

        for attempt in range(1, self.retries + 1):
            last_attempt = attempt == self.retries
            try:
                response = await self._client.request(method, path, params=params)
            except httpx.RequestError as exc:
                if last_attempt:
                    raise SpotifyClientError(f"network error: {exc}") from exc
                await asyncio.sleep(2 ** attempt)
                continue

            payload = self._classify(method, url, response)
            if payload is not None:
                return payload
            retry_after = float(response.headers.get("Retry-After", "1"))
            logger.info("Rate limited on %s %s (attempt %s/%s), retry after %ss", method, url, attempt, self.retries, retry_after)
            if not last_attempt:
                await asyncio.sleep(min(retry_after, self.max_retry_after))

        raise SpotifyRateLimitError(f"rate limited on {method} {url} after {self.retries} attempts", retry_after)

    async def _batched(self, path: str, key: str, ids: List[str], size: int) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for offset in range(0, len(ids), size):
            payload = await self._request("GET", path, params={"ids": ",".join(ids[offset: offset + size])})
            items.extend(item for item in payload.get(key, []) if item)
        return items

    async def get_top_items(self, entity_type: str, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        if entity_type not in ("tracks", "artists"):
            raise ValueError(f"unsupported top item type {entity_type}")
        payload = await self._request(
            "GET",
            f"/me/top/{entity_type}",
            params={"limit": max(1, min(limit, 50)), "time_range": time_range},
        )
        return [item for item in payload.get("items", []) if item and item.get("id")]

    async def get_top_tracks(self, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.get_top_items("tracks", time_range, limit=limit)

    async def get_top_artists(self, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.get_top_items("artists", time_range, limit=limit)

    async def get_artists(self, artist_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return await self._batched("/artists", "artists", list(dict.fromkeys(a for a in artist_ids if a)), 50)

    async def get_tracks(self, track_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return await self._batched("/tracks", "tracks", list(dict.fromkeys(t for t in track_ids if t)), 50)

    async def get_artist_top_tracks(self, artist_id: str, market: str = "US") -> List[Dict[str, Any]]:
        if not artist_id:
            return []
        payload = await self._request("GET", f"/artists/{artist_id}/top-tracks", params={"market": market})
        return [t for t in payload.get("tracks", []) if t and t.get("id")]

    async def get_audio_features_bulk(self, track_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return await self._batched("/audio-features", "audio_features", [t for t in track_ids if t], 100)


async def _token_request(settings: Settings, data: Dict[str, str], *, transport: httpx.AsyncBaseTransport | None = None) -> Dict[str, Any]:
    client_id = settings.spotify_client_id
    client_secret = settings.spotify_client_secret
    if not client_id or not client_secret:
        raise SpotifyClientError("missing spotify client credentials")
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, transport=transport) as client:
            resp = await client.post(TOKEN_ENDPOINT, data=data, auth=(client_id, client_secret))
    except httpx.RequestError as exc:
        raise SpotifyClientError(f"network error contacting token endpoint: {exc}") from exc
    payload = resp.json() if resp.content else {}
    if resp.status_code in (400, 401) and payload.get("error") == "invalid_grant":
        raise SpotifyAuthError(f"refresh token rejected: {payload.get('error_description', '')}")
    if resp.status_code != 200 or "access_token" not in payload:
        raise SpotifyClientError(f"token request failed: {resp.status_code} {payload}")
    return payload


async def refresh_user_token(
    settings: Settings,
    refresh_token: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Tuple[str, str | None]:
    """Exchange a refresh token; returns the new access token and the rotated refresh token, if any."""
    payload = await _token_request(
        settings,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        transport=transport,
    )
    return payload["access_token"], payload.get("refresh_token")


@dataclass(slots=True)
class AppTokenCache:
    """Client-credentials token for calls made on behalf of no particular user."""

    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None
    _token: Tuple[str, float] | None = field(init=False, repr=False, default=None)
    _lock: asyncio.Lock = field(init=False, repr=False, default_factory=asyncio.Lock)

    async def get(self) -> str:
        async with self._lock:
            if self._token and self._token[1] > time.time():
                return self._token[0]
            payload = await _token_request(self.settings, {"grant_type": "client_credentials"}, transport=self.transport)
            expires = time.time() + float(payload.get("expires_in", 3600)) - 30
            self._token = (payload["access_token"], expires)
            return self._token[0]
