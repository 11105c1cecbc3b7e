from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import BatchEmpty, NotFound
from ..db import models
from ..db.base import ensure_utc
from .identity import IdentityMap

logger = logging.getLogger("history")


class Timeframe(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def db_value(self) -> int:
        return _TIMEFRAME_IDS[self]

    @property
    def time_range(self) -> str:
        return f"{self.value}_term"

    @classmethod
    def from_db(cls, value: int) -> "Timeframe":
        for timeframe, db_value in _TIMEFRAME_IDS.items():
            if db_value == value:
                return timeframe
        raise ValueError(f"unknown timeframe id {value}")


_TIMEFRAME_IDS: Dict[Timeframe, int] = {Timeframe.SHORT: 0, Timeframe.MEDIUM: 1, Timeframe.LONG: 2}


class HistoryKind(str, Enum):
    TRACKS = "tracks"
    ARTISTS = "artists"


_MODELS: Dict[HistoryKind, Any] = {
    HistoryKind.TRACKS: models.TrackHistoryEntry,
    HistoryKind.ARTISTS: models.ArtistHistoryEntry,
}


@dataclass(slots=True)
class RankedEntry:
    spotify_id: str
    rank: int


@dataclass(slots=True)
class TrackStatsPoint:
    popularity: int
    playcount: int | None
    recorded_at: datetime


Snapshot = Dict[HistoryKind, Dict[Timeframe, Optional[List[RankedEntry]]]]


class HistorySnapshotStore:
    async def write_batch(
        self,
        session: AsyncSession,
        user_id: int,
        kind: HistoryKind,
        timeframe: Timeframe,
        timestamp: datetime,
        ranked_ids: Sequence[str],
    ) -> int:
        """Store one complete ranked list; ranks are 1..N in input order.

        Runs in its own transaction when the session is idle, otherwise joins the
        caller's, so a batch is never visible in part.
        """
        if not ranked_ids:
            logger.warning("Rejecting empty %s batch for user %s (%s)", kind.value, user_id, timeframe.value)
            raise BatchEmpty(f"empty {kind.value} batch for user {user_id} ({timeframe.value})")
        model = _MODELS[kind]
        rows = [
            model(
                user_id=user_id,
                update_time=timestamp,
                spotify_id=spotify_id,
                timeframe=timeframe.db_value,
                ranking=rank,
            )
            for rank, spotify_id in enumerate(ranked_ids, start=1)
        ]
        if session.in_transaction():
            session.add_all(rows)
            await session.flush()
        else:
            async with session.begin():
                session.add_all(rows)
        logger.debug("Stored %s %s for user %s (%s)", len(rows), kind.value, user_id, timeframe.value)
        return len(rows)

    async def _latest_time(self, session: AsyncSession, user_id: int, kind: HistoryKind, timeframe: Timeframe) -> datetime | None:
        model = _MODELS[kind]
        result = await session.execute(
            select(func.max(model.update_time)).where(model.user_id == user_id, model.timeframe == timeframe.db_value)
        )
        return result.scalar_one_or_none()

    async def latest_for(self, session: AsyncSession, user_id: int, kind: HistoryKind, timeframe: Timeframe) -> List[RankedEntry]:
        model = _MODELS[kind]
        latest = await self._latest_time(session, user_id, kind, timeframe)
        if latest is None:
            raise NotFound(f"{kind.value} history ({timeframe.value})", [user_id])
        result = await session.execute(
            select(model.spotify_id, model.ranking)
            .where(model.user_id == user_id, model.timeframe == timeframe.db_value, model.update_time == latest)
            .order_by(model.ranking)
        )
        return [RankedEntry(spotify_id=spotify_id, rank=rank) for spotify_id, rank in result.all()]

    async def latest_snapshot(self, session: AsyncSession, user_id: int) -> Snapshot:
        snapshot: Snapshot = {}
        for kind in HistoryKind:
            snapshot[kind] = {}
            for timeframe in Timeframe:
                try:
                    snapshot[kind][timeframe] = await self.latest_for(session, user_id, kind, timeframe)
                except NotFound:
                    snapshot[kind][timeframe] = None
        return snapshot

    async def batch_timestamps(self, session: AsyncSession, user_id: int, kind: HistoryKind, timeframe: Timeframe) -> List[datetime]:
        model = _MODELS[kind]
        result = await session.execute(
            select(model.update_time)
            .where(model.user_id == user_id, model.timeframe == timeframe.db_value)
            .group_by(model.update_time)
            .order_by(model.update_time)
        )
        return [ensure_utc(value) for value in result.scalars()]

    async def record_track_stats(
        self,
        session: AsyncSession,
        identity: IdentityMap,
        tracks: Sequence[Mapping[str, Any]],
        timestamp: datetime,
    ) -> int:
        observed = {}
        for track in tracks:
            track_id = track.get("id")
            popularity = track.get("popularity")
            if not track_id or popularity is None:
                continue
            observed[track_id] = (max(int(popularity), 0), track.get("playcount"))
        if not observed:
            return 0
        refs = await identity.resolve_many(session, observed.keys())
        session.add_all(
            models.TrackStatsSnapshot(
                track_ref=refs[track_id],
                popularity=popularity,
                playcount=playcount,
                recorded_at=timestamp,
            )
            for track_id, (popularity, playcount) in observed.items()
        )
        await session.flush()
        return len(observed)

    async def track_stats(self, session: AsyncSession, identity: IdentityMap, track_id: str) -> List[TrackStatsPoint]:
        ref = await identity.find(session, track_id)
        if ref is None:
            raise NotFound("track stats", [track_id])
        result = await session.execute(
            select(models.TrackStatsSnapshot)
            .where(models.TrackStatsSnapshot.track_ref == ref)
            .order_by(models.TrackStatsSnapshot.recorded_at, models.TrackStatsSnapshot.id)
        )
        points = [
            TrackStatsPoint(popularity=int(row.popularity), playcount=row.playcount, recorded_at=ensure_utc(row.recorded_at))
            for row in result.scalars()
        ]
        if not points:
            raise NotFound("track stats", [track_id])
        return points
