from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from ...cache.redis import enqueue_missing_artists
from ...core.config import Settings
from ...core.errors import DimensionMismatch, NotFound, RequestTimeout
from ...core.security import verify_service_token
from ...schemas.artists import AverageArtistsResponse
from ...services.averaging import average_artists
from ...services.vector_store import FeatureVectorStore
from ...spotify.parsing import parse_artist_id
from ..deps import get_db_session, get_redis_dep, get_settings_dep, get_vector_store

logger = logging.getLogger("api.artists")

router = APIRouter(prefix="/v1", tags=["artists"], dependencies=[Depends(verify_service_token)])


@router.get("/average_artists/{artist1}/{artist2}", response_model=AverageArtistsResponse)
async def get_average_artists(
    artist1: str,
    artist2: str,
    k: int | None = Query(None, ge=1),
    *,
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis_dep),
    store: FeatureVectorStore = Depends(get_vector_store),
    settings: Settings = Depends(get_settings_dep),
) -> AverageArtistsResponse:
    try:
        first, second = parse_artist_id(artist1), parse_artist_id(artist2)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    limit = min(k or settings.average_artists_default_k, settings.average_artists_max_k)
    try:
        result = await average_artists(session, first, second, limit, store=store, settings=settings)
    except NotFound as exc:
        try:
            await enqueue_missing_artists(redis, exc.ids)
        except RedisError as redis_exc:
            logger.warning("Could not queue missing artists %s: %s", ", ".join(exc.ids), redis_exc)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": str(exc), "missing": list(exc.ids)},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RequestTimeout as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    except DimensionMismatch as exc:
        logger.critical("Corpus integrity violation: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="corpus integrity violation") from exc
    return AverageArtistsResponse.from_result(result)
