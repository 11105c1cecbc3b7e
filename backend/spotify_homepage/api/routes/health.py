from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ...schemas.stats import HealthResponse
from ...services.vector_store import FeatureVectorStore
from ..deps import get_db_session, get_vector_store

router = APIRouter(prefix="/v1", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def get_health(
    session: AsyncSession = Depends(get_db_session),
    store: FeatureVectorStore = Depends(get_vector_store),
) -> HealthResponse:
    return HealthResponse(ok=True, corpus_size=await store.count(session))
