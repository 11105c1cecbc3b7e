from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import numpy as np
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from conftest import StubAppTokens, StubRedis, StubSpotifyClient, default_catalog, make_settings, open_db
from spotify_homepage.api.deps import get_db_session, get_metadata_cache, get_redis_dep, get_scheduler, get_settings_dep
from spotify_homepage.api.routes import admin, artists, health, stats
from spotify_homepage.cache.redis import ARTISTS_CACHE_KEY, PENDING_ARTISTS_KEY, TRACKS_CACHE_KEY
from spotify_homepage.core.config import get_settings
from spotify_homepage.db.session import build_engine
from spotify_homepage.services.history import HistoryKind, HistorySnapshotStore, Timeframe
from spotify_homepage.services.identity import IdentityMap
from spotify_homepage.services.ingestion import CycleResult, IngestState
from spotify_homepage.services.metadata import EntityMetadataCache
from spotify_homepage.services.users import register_user
from spotify_homepage.services.vector_store import ArtistProfile, FeatureVectorStore

X, Y, Z, W = ("x" * 22, "y" * 22, "z" * 22, "w" * 22)
UNKNOWN = "u" * 22
TRACK = "t" * 22
HEADERS = {"X-Service-Token": "secret"}
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _StubScheduler:
    async def run_tick(self):
        return [
            CycleResult(user_id=1, spotify_id="alice", transitions=[IngestState.FETCHING, IngestState.WRITING, IngestState.IDLE], succeeded=True),
            CycleResult(user_id=2, spotify_id="bob", transitions=[IngestState.FETCHING, IngestState.FAILED, IngestState.IDLE], error="boom"),
        ]


async def _seed(db_url: str, settings) -> None:
    engine, maker = await open_db(db_url)
    store = FeatureVectorStore(settings)
    history = HistorySnapshotStore()
    async with maker() as session:
        for artist_id, vector in ((X, [0.0, 0.0]), (Y, [10.0, 0.0]), (Z, [5.0, 1.0]), (W, [0.0, 7.0])):
            await store.upsert(
                session,
                ArtistProfile(
                    spotify_id=artist_id,
                    vector=np.asarray(vector, dtype=np.float32),
                    followers=12,
                    popularity=34,
                    name=f"Artist {artist_id[0]}",
                    top_tracks=[{"id": f"{artist_id[0]}-hit", "title": "Hit", "artists": f"Artist {artist_id[0]}"}],
                ),
            )
        user = await register_user(session, spotify_id="alice", username="Alice", token="tok", refresh_token="ref")
        await session.commit()
        await history.write_batch(session, user.id, HistoryKind.TRACKS, Timeframe.SHORT, T0, ["t1", "t2"])
        await history.write_batch(session, user.id, HistoryKind.ARTISTS, Timeframe.MEDIUM, T0, ["a1", "ghost"])
        await history.record_track_stats(session, IdentityMap(), [{"id": TRACK, "popularity": 61}], T0)
        await session.commit()
    await engine.dispose()


@pytest.fixture
def api(db_url: str):
    settings = make_settings(feature_dim=2, service_token="secret")
    asyncio.run(_seed(db_url, settings))
    redis = StubRedis()

    # a fresh connection per request; TestClient drives the app from its own event loop
    engine = build_engine(db_url, poolclass=NullPool)
    maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def _session():
        async with maker() as session:
            yield session

    async def _redis():
        yield redis

    app = FastAPI()
    for module in (health, artists, stats, admin):
        app.include_router(module.router)
    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_redis_dep] = _redis
    app.dependency_overrides[get_settings_dep] = lambda: settings
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_scheduler] = lambda: _StubScheduler()
    catalog = default_catalog()
    app.dependency_overrides[get_metadata_cache] = lambda: EntityMetadataCache(
        redis, settings, app_tokens=StubAppTokens(), client_factory=lambda token: StubSpotifyClient(token, catalog)
    )

    with TestClient(app) as client:
        yield client, redis


def test_average_artists(api) -> None:
    client, _ = api
    response = client.get(f"/v1/average_artists/{X}/{Y}", params={"k": 1}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["emptyCorpus"] is False
    assert body["similarity"] == pytest.approx(0.5)
    assert body["distance"] == pytest.approx(0.5)
    assert [item["artist"]["id"] for item in body["artists"]] == [Z]
    item = body["artists"][0]
    assert set(item) == {"artist", "topTracks", "similarityToTargetPoint", "similarityToArtist1", "similarityToArtist2"}
    assert item["topTracks"][0]["id"] == "z-hit"
    assert item["topTracks"][0]["previewUrl"] is None
    assert item["artist"]["followers"] == 12


def test_average_artists_accepts_uris(api) -> None:
    client, _ = api
    response = client.get(f"/v1/average_artists/spotify:artist:{Z}/{W}", headers=HEADERS)
    assert response.status_code == 200
    ids = {item["artist"]["id"] for item in response.json()["artists"]}
    assert ids == {X, Y}


def test_unknown_artist_is_queued(api) -> None:
    client, redis = api
    response = client.get(f"/v1/average_artists/{X}/{UNKNOWN}", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["detail"]["missing"] == [UNKNOWN]
    assert redis.sets[PENDING_ARTISTS_KEY] == {UNKNOWN}


@pytest.mark.parametrize("path", [f"/v1/average_artists/{X}/{X}", f"/v1/average_artists/{X}/nope", f"/v1/average_artists/spotify:track:{Y}/{X}"])
def test_bad_average_requests(api, path: str) -> None:
    client, _ = api
    assert client.get(path, headers=HEADERS).status_code == 400


def test_service_token_required(api) -> None:
    client, _ = api
    assert client.get(f"/v1/average_artists/{X}/{Y}").status_code == 401
    assert client.get("/v1/stats/alice", headers={"X-Service-Token": "wrong"}).status_code == 401


def test_user_stats(api) -> None:
    client, _ = api
    response = client.get("/v1/stats/alice", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["spotifyId"] == "alice"
    short = body["tracks"]["short"]
    assert [(item["spotifyId"], item["rank"]) for item in short] == [("t1", 1), ("t2", 2)]
    assert short[0]["track"]["title"] == "Track t1"
    assert short[1]["track"]["artists"] == "Artist a3"
    assert short[0]["track"]["imageUrl"] == "https://img.example/t1.jpg"
    assert body["tracks"]["medium"] is None
    assert body["artists"]["short"] is None
    first, unknown = body["artists"]["medium"]
    assert (first["spotifyId"], first["artist"]["name"], first["artist"]["followers"]) == ("a1", "Artist a1", 1000)
    assert (unknown["spotifyId"], unknown["rank"], unknown["artist"]) == ("ghost", 2, None)
    assert client.get("/v1/stats/nobody", headers=HEADERS).status_code == 404


def test_user_stats_metadata_is_cached(api) -> None:
    client, redis = api
    assert client.get("/v1/stats/alice", headers=HEADERS).status_code == 200
    assert set(redis.hashes[TRACKS_CACHE_KEY]) == {"t1", "t2"}
    assert set(redis.hashes[ARTISTS_CACHE_KEY]) == {"a1"}


def test_track_stats(api) -> None:
    client, _ = api
    response = client.get(f"/v1/tracks/{TRACK}/stats", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["trackId"] == TRACK
    assert [(p["popularity"], p["playcount"]) for p in body["points"]] == [(61, None)]
    assert client.get(f"/v1/tracks/{UNKNOWN}/stats", headers=HEADERS).status_code == 404
    assert client.get("/v1/tracks/short/stats", headers=HEADERS).status_code == 400


def test_delete_user(api) -> None:
    client, _ = api
    assert client.delete("/v1/users/alice", headers=HEADERS).status_code == 204
    assert client.get("/v1/stats/alice", headers=HEADERS).status_code == 404
    assert client.delete("/v1/users/alice", headers=HEADERS).status_code == 404


def test_health_reports_corpus_size(api) -> None:
    client, _ = api
    response = client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "corpusSize": 4}


def test_update_user_runs_a_tick(api) -> None:
    client, _ = api
    response = client.post("/v1/update_user", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"users": 2, "succeeded": 1, "failed": 1, "skipped": 0, "failures": {"bob": "boom"}}
