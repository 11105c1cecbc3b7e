from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from redis.asyncio import Redis

from ..core.config import get_settings

settings = get_settings()

redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

PENDING_ARTISTS_KEY = "homepage:pending_artists"
ARTISTS_CACHE_KEY = "homepage:artists"
TRACKS_CACHE_KEY = "homepage:tracks"


async def get_redis() -> AsyncIterator[Redis]:
    try:
        yield redis
    finally:
        # keep connection open for reuse; do not close
        pass


async def acquire_lock(client: Redis, key: str, *, ttl: int = 60) -> bool:
    return bool(await client.set(name=key, value="1", nx=True, ex=ttl))


async def release_lock(client: Redis, key: str) -> None:
    await client.delete(key)


async def enqueue_missing_artists(client: Redis, artist_ids: Iterable[str]) -> int:
    ids = [i for i in artist_ids if i]
    if not ids:
        return 0
    return int(await client.sadd(PENDING_ARTISTS_KEY, *ids))


async def drain_missing_artists(client: Redis, limit: int) -> List[str]:
    popped = await client.spop(PENDING_ARTISTS_KEY, limit)
    if not popped:
        return []
    if isinstance(popped, str):
        return [popped]
    return sorted(popped)


async def get_hash_items(client: Redis, key: str, item_ids: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
    """Cached JSON objects in ``item_ids`` order, ``None`` where the hash has no entry."""
    if not item_ids:
        return []
    raw = await client.hmget(key, list(item_ids))
    return [json.loads(value) if value else None for value in raw]


async def set_hash_items(client: Redis, key: str, items: Mapping[str, Dict[str, Any]]) -> None:
    if not items:
        return
    await client.hset(key, mapping={item_id: json.dumps(item) for item_id, item in items.items()})
