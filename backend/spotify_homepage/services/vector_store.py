from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Set, Tuple

import numpy as np
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import DimensionMismatch, NotFound
from ..db import models
from ..db.base import ensure_utc, utc_now
from ..db.upsert import insert_for

logger = logging.getLogger("vector_store")


@dataclass(slots=True)
class ArtistProfile:
    spotify_id: str
    vector: np.ndarray
    followers: int = 0
    popularity: int = 0
    uri: str = ""
    name: str = ""
    top_tracks: List[Dict[str, Any]] = field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def dim(self) -> int:
        return int(np.asarray(self.vector).shape[0])


def _vector_from_row(row: models.ArtistStats) -> np.ndarray:
    return np.frombuffer(row.vector, dtype=np.float32)


def _profile_from_row(row: models.ArtistStats) -> ArtistProfile:
    return ArtistProfile(
        spotify_id=row.spotify_id,
        vector=_vector_from_row(row),
        followers=int(row.followers),
        popularity=int(row.popularity),
        uri=row.uri,
        name=row.name,
        top_tracks=list(row.top_tracks or []),
        updated_at=ensure_utc(row.updated_at) if row.updated_at else None,
    )


class CorpusScan:
    """Restartable view over every stored vector.

    Each ``async for`` issues a single streamed SELECT, so one pass sees the
    corpus as it was when the pass started; artists upserted mid-scan may be
    missing from it.
    """

    def __init__(self, session: AsyncSession, dimension: int, *, chunk_size: int) -> None:
        self.session = session
        self.dimension = dimension
        self.chunk_size = chunk_size

    def __aiter__(self) -> AsyncIterator[Tuple[str, np.ndarray]]:
        return self._rows()

    async def _rows(self) -> AsyncIterator[Tuple[str, np.ndarray]]:
        stmt = select(models.ArtistStats.spotify_id, models.ArtistStats.vector, models.ArtistStats.vector_dim).execution_options(
            yield_per=self.chunk_size
        )
        result = await self.session.stream(stmt)
        try:
            async for spotify_id, vector_bytes, vector_dim in result:
                if vector_dim != self.dimension:
                    logger.warning("Skipping %s: stored vector has %s dims, corpus uses %s", spotify_id, vector_dim, self.dimension)
                    continue
                yield spotify_id, np.frombuffer(vector_bytes, dtype=np.float32)
        finally:
            await result.close()


class FeatureVectorStore:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.dimension = self.settings.feature_dim

    async def get(self, session: AsyncSession, spotify_id: str) -> ArtistProfile:
        profiles = await self.get_many(session, [spotify_id])
        if spotify_id not in profiles:
            raise NotFound("artist", [spotify_id])
        return profiles[spotify_id]

    async def get_many(self, session: AsyncSession, spotify_ids: Iterable[str]) -> Dict[str, ArtistProfile]:
        ids = list(dict.fromkeys(spotify_ids))
        if not ids:
            return {}
        result = await session.execute(select(models.ArtistStats).where(models.ArtistStats.spotify_id.in_(ids)))
        return {row.spotify_id: _profile_from_row(row) for row in result.scalars()}

    def validate(self, profile: ArtistProfile) -> np.ndarray:
        vector = np.asarray(profile.vector, dtype=np.float32).ravel()
        if vector.shape[0] != self.dimension:
            logger.critical(
                "Refusing artist vector for %s: %s dims, corpus uses %s", profile.spotify_id, vector.shape[0], self.dimension
            )
            raise DimensionMismatch(self.dimension, vector.shape[0], subject=profile.spotify_id)
        if not np.all(np.isfinite(vector)):
            raise ValueError(f"non-finite feature vector for {profile.spotify_id}")
        if profile.followers < 0 or profile.popularity < 0:
            raise ValueError(f"negative stats for {profile.spotify_id}")
        return vector

    async def upsert(self, session: AsyncSession, profile: ArtistProfile) -> None:
        vector = self.validate(profile)
        values = {
            "spotify_id": profile.spotify_id,
            "name": profile.name,
            "followers": int(profile.followers),
            "popularity": int(profile.popularity),
            "uri": profile.uri or f"spotify:artist:{profile.spotify_id}",
            "vector": vector.tobytes(),
            "vector_dim": int(vector.shape[0]),
            "top_tracks": list(profile.top_tracks),
            "updated_at": utc_now(),
        }
        stmt = insert_for(session, models.ArtistStats).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["spotify_id"],
            set_={key: stmt.excluded[key] for key in values if key != "spotify_id"},
        )
        await session.execute(stmt)

    async def stale_ids(self, session: AsyncSession, spotify_ids: Iterable[str], *, max_age: timedelta) -> Set[str]:
        ids = set(i for i in spotify_ids if i)
        if not ids:
            return set()
        cutoff = utc_now() - max_age
        result = await session.execute(
            select(models.ArtistStats.spotify_id, models.ArtistStats.updated_at).where(models.ArtistStats.spotify_id.in_(ids))
        )
        fresh = {spotify_id for spotify_id, updated_at in result.all() if updated_at and ensure_utc(updated_at) >= cutoff}
        return ids - fresh

    def all_vectors(self, session: AsyncSession) -> CorpusScan:
        return CorpusScan(session, self.dimension, chunk_size=self.settings.corpus_scan_chunk_size)

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count()).select_from(models.ArtistStats))
        return int(result.scalar_one())
