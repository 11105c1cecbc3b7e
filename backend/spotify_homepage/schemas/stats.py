from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import Field

from ..db import models
from ..services.history import HistoryKind, RankedEntry, Snapshot, TrackStatsPoint
from ..services.ingestion import CycleResult
from .artists import ArtistOut, CamelModel, TrackSummary


class ArtistSummary(ArtistOut):
    genres: List[str] = []
    image_url: Optional[str] = None


class RankedTrack(CamelModel):
    spotify_id: str
    rank: int = Field(..., ge=1)
    # None when the track could not be described upstream
    track: Optional[TrackSummary] = None


class RankedArtist(CamelModel):
    spotify_id: str
    rank: int = Field(..., ge=1)
    artist: Optional[ArtistSummary] = None


def _tracks(entries: Optional[List[RankedEntry]], metadata: Mapping[str, Dict[str, Any]]) -> Optional[List[RankedTrack]]:
    if entries is None:
        return None
    return [
        RankedTrack(spotify_id=e.spotify_id, rank=e.rank, track=TrackSummary(**metadata[e.spotify_id]) if e.spotify_id in metadata else None)
        for e in entries
    ]


def _artists(entries: Optional[List[RankedEntry]], metadata: Mapping[str, Dict[str, Any]]) -> Optional[List[RankedArtist]]:
    if entries is None:
        return None
    return [
        RankedArtist(spotify_id=e.spotify_id, rank=e.rank, artist=ArtistSummary(**metadata[e.spotify_id]) if e.spotify_id in metadata else None)
        for e in entries
    ]


def snapshot_ids(snapshot: Snapshot, kind: HistoryKind) -> List[str]:
    return [e.spotify_id for entries in snapshot[kind].values() if entries for e in entries]


class UserStatsResponse(CamelModel):
    spotify_id: str
    username: str
    last_update_time: datetime
    # timeframe -> ranked list; None when nothing was stored for that timeframe yet
    tracks: Dict[str, Optional[List[RankedTrack]]]
    artists: Dict[str, Optional[List[RankedArtist]]]

    @classmethod
    def from_snapshot(
        cls,
        user: models.User,
        snapshot: Snapshot,
        *,
        track_metadata: Mapping[str, Dict[str, Any]] | None = None,
        artist_metadata: Mapping[str, Dict[str, Any]] | None = None,
    ) -> "UserStatsResponse":
        return cls(
            spotify_id=user.spotify_id,
            username=user.username,
            last_update_time=user.last_update_time,
            tracks={tf.value: _tracks(entries, track_metadata or {}) for tf, entries in snapshot[HistoryKind.TRACKS].items()},
            artists={tf.value: _artists(entries, artist_metadata or {}) for tf, entries in snapshot[HistoryKind.ARTISTS].items()},
        )


class TrackStatsPointOut(CamelModel):
    popularity: int = Field(..., ge=0)
    playcount: Optional[int] = None
    recorded_at: datetime


class TrackStatsResponse(CamelModel):
    track_id: str
    points: List[TrackStatsPointOut]

    @classmethod
    def from_points(cls, track_id: str, points: Sequence[TrackStatsPoint]) -> "TrackStatsResponse":
        return cls(
            track_id=track_id,
            points=[TrackStatsPointOut(popularity=p.popularity, playcount=p.playcount, recorded_at=p.recorded_at) for p in points],
        )


class TickResponse(CamelModel):
    users: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = {}

    @classmethod
    def from_results(cls, results: Sequence[CycleResult]) -> "TickResponse":
        return cls(
            users=len(results),
            succeeded=sum(1 for r in results if r.succeeded),
            failed=sum(1 for r in results if r.error),
            skipped=sum(1 for r in results if r.skipped),
            failures={r.spotify_id: r.error for r in results if r.error},
        )


class HealthResponse(CamelModel):
    ok: bool = True
    corpus_size: int = 0
