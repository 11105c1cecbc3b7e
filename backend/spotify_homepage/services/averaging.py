from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import EmptyCorpus, NotFound, RequestTimeout
from .similarity import Neighbor, anearest_to, as_vector, distance, midpoint, similarity
from .vector_store import ArtistProfile, FeatureVectorStore

logger = logging.getLogger("averaging")


@dataclass(slots=True)
class AverageCandidate:
    artist: ArtistProfile
    similarity_to_midpoint: float
    similarity_to_artist1: float
    similarity_to_artist2: float

    @property
    def top_tracks(self) -> List[Dict[str, Any]]:
        return self.artist.top_tracks


@dataclass(slots=True)
class AverageArtistsResult:
    artist1: ArtistProfile
    artist2: ArtistProfile
    pair_similarity: float
    pair_distance: float
    candidates: List[AverageCandidate] = field(default_factory=list)
    empty_corpus: bool = False


async def _scan(store: FeatureVectorStore, session: AsyncSession, target, exclude, k: int, chunk_size: int) -> List[Neighbor]:
    async with aclosing(store.all_vectors(session).__aiter__()) as rows:
        return await anearest_to(target, rows, exclude=exclude, k=k, chunk_size=chunk_size)


async def average_artists(
    session: AsyncSession,
    artist1_id: str,
    artist2_id: str,
    k: int,
    *,
    store: FeatureVectorStore | None = None,
    settings: Settings | None = None,
) -> AverageArtistsResult:
    settings = settings or get_settings()
    store = store or FeatureVectorStore(settings)
    if artist1_id == artist2_id:
        raise ValueError("two different artists are required")
    if k < 1:
        raise ValueError("k must be at least 1")

    profiles = await store.get_many(session, [artist1_id, artist2_id])
    missing = [i for i in (artist1_id, artist2_id) if i not in profiles]
    if missing:
        raise NotFound("artist", missing)
    first, second = profiles[artist1_id], profiles[artist2_id]
    v1, v2 = as_vector(first.vector), as_vector(second.vector)

    target = midpoint(v1, v2)
    result = AverageArtistsResult(
        artist1=first,
        artist2=second,
        pair_similarity=similarity(v1, v2),
        pair_distance=distance(v1, v2),
    )

    try:
        neighbors = await asyncio.wait_for(
            _scan(store, session, target, {artist1_id, artist2_id}, k, settings.corpus_scan_chunk_size),
            timeout=settings.corpus_scan_timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("Corpus scan for %s/%s exceeded %.1fs", artist1_id, artist2_id, settings.corpus_scan_timeout_seconds)
        raise RequestTimeout(f"corpus scan exceeded {settings.corpus_scan_timeout_seconds}s") from exc
    except EmptyCorpus as exc:
        logger.info("No average candidates for %s/%s: %s", artist1_id, artist2_id, exc)
        result.empty_corpus = True
        return result

    hydrated = await store.get_many(session, [artist_id for artist_id, _ in neighbors])
    for artist_id, score in neighbors:
        profile = hydrated.get(artist_id)
        if profile is None:
            # purged after the scan read it
            continue
        vector = as_vector(profile.vector)
        result.candidates.append(
            AverageCandidate(
                artist=profile,
                similarity_to_midpoint=score,
                similarity_to_artist1=similarity(vector, v1),
                similarity_to_artist2=similarity(vector, v2),
            )
        )
    logger.info("Average of %s and %s: %s candidates", artist1_id, artist2_id, len(result.candidates))
    return result
