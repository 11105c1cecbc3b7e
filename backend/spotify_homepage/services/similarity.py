"""Vector math behind the average-artists feature.

Metric: with ``cos`` the cosine of the angle between two L2-normalised vectors,

    distance   = (1 - cos) / 2        in [0, 1]
    similarity = 1 - distance = (1 + cos) / 2

Two zero vectors count as identical (cos = 1); a zero vector against anything
else counts as orthogonal (cos = 0). Scores are rounded to ``SCORE_PRECISION``
decimals so equal vectors tie exactly and rankings are reproducible.
"""
from __future__ import annotations

import logging
from typing import AsyncIterable, Iterable, List, Sequence, Set, Tuple

import numpy as np
from sklearn.preprocessing import normalize

from ..core.errors import DimensionMismatch, EmptyCorpus

SCORE_PRECISION = 12
DEFAULT_CHUNK_SIZE = 2048

Neighbor = Tuple[str, float]

logger = logging.getLogger("similarity")


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).ravel()


def _check_dims(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])


def midpoint(v1: Sequence[float] | np.ndarray, v2: Sequence[float] | np.ndarray) -> np.ndarray:
    a = as_vector(v1)
    b = as_vector(v2)
    _check_dims(a, b)
    return (a + b) / 2.0


def _cosines(target: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    target_unit = normalize(target.reshape(1, -1))[0]
    rows = normalize(matrix)
    cos = rows @ target_unit
    if not np.any(target_unit):
        zero_rows = ~np.any(rows, axis=1)
        cos = np.where(zero_rows, 1.0, 0.0)
    return np.clip(cos, -1.0, 1.0)


def similarities(target: Sequence[float] | np.ndarray, matrix: np.ndarray) -> np.ndarray:
    t = as_vector(target)
    m = np.asarray(matrix, dtype=np.float64)
    if m.ndim != 2:
        m = m.reshape(-1, t.shape[0])
    if m.shape[1] != t.shape[0]:
        raise DimensionMismatch(t.shape[0], m.shape[1])
    if m.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    scores = (1.0 + _cosines(t, m)) / 2.0
    return np.round(np.clip(scores, 0.0, 1.0), SCORE_PRECISION)


def similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    va = as_vector(a)
    vb = as_vector(b)
    _check_dims(va, vb)
    return float(similarities(va, vb.reshape(1, -1))[0])


def distance(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    return float(np.round(1.0 - similarity(a, b), SCORE_PRECISION))


class TopNeighbors:
    """Keeps the best ``k`` (id, score) pairs: score descending, id ascending on ties."""

    def __init__(self, k: int, exclude: Iterable[str] = ()) -> None:
        if k < 1:
            raise ValueError("k must be at least 1")
        self.k = k
        self.exclude: Set[str] = set(exclude)
        self.scanned = 0
        self._best: List[Neighbor] = []

    def offer(self, ids: Sequence[str], scores: np.ndarray) -> None:
        merged = list(self._best)
        for external_id, score in zip(ids, scores):
            self.scanned += 1
            if external_id in self.exclude:
                continue
            merged.append((external_id, float(score)))
        merged.sort(key=lambda item: (-item[1], item[0]))
        self._best = merged[: self.k]

    def results(self) -> List[Neighbor]:
        if not self._best:
            raise EmptyCorpus(f"no candidates left after excluding {sorted(self.exclude)} from {self.scanned} vectors")
        return list(self._best)


def _score_chunk(target: np.ndarray, ids: List[str], rows: List[np.ndarray], top: TopNeighbors) -> None:
    vectors = [as_vector(row) for row in rows]
    for external_id, vector in zip(ids, vectors):
        if vector.shape[0] != target.shape[0]:
            raise DimensionMismatch(target.shape[0], vector.shape[0], subject=external_id)
    top.offer(ids, similarities(target, np.vstack(vectors)))


def nearest_to(
    target: Sequence[float] | np.ndarray,
    corpus: Iterable[Tuple[str, Sequence[float] | np.ndarray]],
    *,
    exclude: Iterable[str] = (),
    k: int,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[Neighbor]:
    t = as_vector(target)
    top = TopNeighbors(k, exclude)
    ids: List[str] = []
    rows: List[np.ndarray] = []
    for external_id, vector in corpus:
        ids.append(external_id)
        rows.append(vector)
        if len(ids) >= chunk_size:
            _score_chunk(t, ids, rows, top)
            ids, rows = [], []
    if ids:
        _score_chunk(t, ids, rows, top)
    return top.results()


async def anearest_to(
    target: Sequence[float] | np.ndarray,
    corpus: AsyncIterable[Tuple[str, Sequence[float] | np.ndarray]],
    *,
    exclude: Iterable[str] = (),
    k: int,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[Neighbor]:
    t = as_vector(target)
    top = TopNeighbors(k, exclude)
    ids: List[str] = []
    rows: List[np.ndarray] = []
    async for external_id, vector in corpus:
        ids.append(external_id)
        rows.append(vector)
        if len(ids) >= chunk_size:
            _score_chunk(t, ids, rows, top)
            ids, rows = [], []
    if ids:
        _score_chunk(t, ids, rows, top)
    logger.debug("Scanned %s corpus vectors", top.scanned)
    return top.results()
