from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..cache.redis import ARTISTS_CACHE_KEY, TRACKS_CACHE_KEY, get_hash_items, set_hash_items
from ..core.config import Settings, get_settings
from ..spotify.client import AppTokenCache, SpotifyClient, SpotifyClientError
from .features import summarize_artist, summarize_track

logger = logging.getLogger("metadata")

ClientFactory = Callable[[str], SpotifyClient]
Summary = Dict[str, Any]


class EntityMetadataCache:
    """Display metadata for artists and tracks, cached in redis hashes.

    Lookups read the hash first and fetch only the misses upstream with the
    application token. Metadata is decoration: when redis or Spotify is
    unavailable the ids that could not be described are left out of the result.
    """

    def __init__(
        self,
        redis: Redis,
        settings: Settings | None = None,
        *,
        app_tokens: AppTokenCache | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.redis = redis
        self.settings = settings or get_settings()
        self.app_tokens = app_tokens or AppTokenCache(self.settings)
        self.client_factory = client_factory or (lambda token: SpotifyClient.from_settings(token, self.settings))

    async def artists(self, artist_ids: Sequence[str]) -> Dict[str, Summary]:
        return await self._lookup(ARTISTS_CACHE_KEY, artist_ids, lambda client, ids: client.get_artists(ids), summarize_artist)

    async def tracks(self, track_ids: Sequence[str]) -> Dict[str, Summary]:
        return await self._lookup(TRACKS_CACHE_KEY, track_ids, lambda client, ids: client.get_tracks(ids), summarize_track)

    async def _lookup(
        self,
        key: str,
        item_ids: Sequence[str],
        fetch: Callable[[SpotifyClient, List[str]], Awaitable[List[Dict[str, Any]]]],
        summarize: Callable[[Dict[str, Any]], Summary],
    ) -> Dict[str, Summary]:
        ids = list(dict.fromkeys(i for i in item_ids if i))
        if not ids:
            return {}
        try:
            cached = await get_hash_items(self.redis, key, ids)
        except RedisError as exc:
            logger.warning("Metadata cache %s unavailable: %s", key, exc)
            cached = [None] * len(ids)
        found = {item_id: item for item_id, item in zip(ids, cached) if item is not None}
        missing = [item_id for item_id in ids if item_id not in found]
        if not missing:
            return found

        try:
            client = self.client_factory(await self.app_tokens.get())
            try:
                payloads = await fetch(client, missing)
            finally:
                await client.close()
        except SpotifyClientError as exc:
            logger.warning("Could not describe %s ids from %s: %s", len(missing), key, exc)
            return found

        fetched = {payload["id"]: summarize(payload) for payload in payloads if payload.get("id")}
        try:
            await set_hash_items(self.redis, key, fetched)
        except RedisError as exc:
            logger.warning("Could not cache %s items in %s: %s", len(fetched), key, exc)
        found.update(fetched)
        return found
