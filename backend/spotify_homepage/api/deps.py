from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache.redis import get_redis
from ..core.config import Settings, get_settings
from ..db.session import get_session
from ..services.history import HistorySnapshotStore
from ..services.ingestion import IngestionScheduler
from ..services.metadata import EntityMetadataCache
from ..services.vector_store import FeatureVectorStore


async def get_settings_dep() -> Settings:
    return get_settings()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


async def get_redis_dep() -> AsyncIterator[Redis]:
    async for client in get_redis():
        yield client


async def get_vector_store(settings: Settings = Depends(get_settings_dep)) -> FeatureVectorStore:
    return FeatureVectorStore(settings)


async def get_history_store() -> HistorySnapshotStore:
    return HistorySnapshotStore()


async def get_metadata_cache(
    request: Request,
    redis: Redis = Depends(get_redis_dep),
    settings: Settings = Depends(get_settings_dep),
) -> EntityMetadataCache:
    return EntityMetadataCache(redis, settings, app_tokens=getattr(request.app.state, "app_tokens", None))


async def get_scheduler(request: Request) -> IngestionScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ingestion scheduler not configured")
    return scheduler
