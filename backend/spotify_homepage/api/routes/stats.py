from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.errors import NotFound
from ...core.security import verify_service_token
from ...schemas.stats import TrackStatsResponse, UserStatsResponse, snapshot_ids
from ...services.history import HistoryKind, HistorySnapshotStore
from ...services.identity import identity_map
from ...services.metadata import EntityMetadataCache
from ...services.users import delete_user, get_user_by_spotify_id
from ...spotify.parsing import parse_track_id
from ..deps import get_db_session, get_history_store, get_metadata_cache

router = APIRouter(prefix="/v1", tags=["stats"], dependencies=[Depends(verify_service_token)])


@router.get("/stats/{spotify_id}", response_model=UserStatsResponse)
async def get_user_stats(
    spotify_id: str,
    session: AsyncSession = Depends(get_db_session),
    history: HistorySnapshotStore = Depends(get_history_store),
    metadata: EntityMetadataCache = Depends(get_metadata_cache),
) -> UserStatsResponse:
    try:
        user = await get_user_by_spotify_id(session, spotify_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    snapshot = await history.latest_snapshot(session, user.id)
    tracks = await metadata.tracks(snapshot_ids(snapshot, HistoryKind.TRACKS))
    artists = await metadata.artists(snapshot_ids(snapshot, HistoryKind.ARTISTS))
    return UserStatsResponse.from_snapshot(user, snapshot, track_metadata=tracks, artist_metadata=artists)


@router.get("/tracks/{track_id}/stats", response_model=TrackStatsResponse)
async def get_track_stats(
    track_id: str,
    session: AsyncSession = Depends(get_db_session),
    history: HistorySnapshotStore = Depends(get_history_store),
) -> TrackStatsResponse:
    try:
        parsed = parse_track_id(track_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    try:
        points = await history.track_stats(session, identity_map, parsed)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return TrackStatsResponse.from_points(parsed, points)


@router.delete("/users/{spotify_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user(spotify_id: str, session: AsyncSession = Depends(get_db_session)) -> Response:
    try:
        await delete_user(session, spotify_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
