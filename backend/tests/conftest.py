from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles

pytest.importorskip("aiosqlite")

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spotify_homepage.core.config import Settings
from spotify_homepage.db.session import build_engine, init_db
from spotify_homepage.spotify.client import SpotifyAuthError, SpotifyRateLimitError


@compiles(JSONB, "sqlite")
def _compile_jsonb_to_sqlite(element, compiler, **kw):  # pragma: no cover - SQLite shim
    return "JSON"


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "postgres_dsn": "sqlite+aiosqlite://",
        "spotify_client_id": "client-id",
        "spotify_client_secret": "client-secret",
        "ingest_backoff_seconds": 0.0,
        "min_update_interval_seconds": 0,
        "ingest_concurrency": 2,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'homepage.db'}"


async def open_db(url: str) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = build_engine(url)
    await init_db(engine)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class StubRedis:
    def __init__(self) -> None:
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}

    async def set(self, name: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and name in self.values:
            return None
        self.values[name] = value
        return True

    async def delete(self, *names: str) -> int:
        return sum(1 for name in names if self.values.pop(name, None) is not None)

    async def sadd(self, name: str, *values: str) -> int:
        members = self.sets.setdefault(name, set())
        added = [v for v in values if v not in members]
        members.update(added)
        return len(added)

    async def spop(self, name: str, count: int | None = None) -> Any:
        members = self.sets.get(name, set())
        if count is None:
            return members.pop() if members else None
        popped = [members.pop() for _ in range(min(count, len(members)))]
        return popped

    async def hmget(self, name: str, keys: List[str]) -> List[str | None]:
        stored = self.hashes.get(name, {})
        return [stored.get(key) for key in keys]

    async def hset(self, name: str, mapping: Dict[str, str]) -> int:
        stored = self.hashes.setdefault(name, {})
        added = sum(1 for key in mapping if key not in stored)
        stored.update(mapping)
        return added


def track_payload(track_id: str, artist_id: str, *, popularity: int = 50) -> Dict[str, Any]:
    return {
        "id": track_id,
        "name": f"Track {track_id}",
        "popularity": popularity,
        "preview_url": None,
        "uri": f"spotify:track:{track_id}",
        "album": {"name": f"Album {track_id}", "images": [{"url": f"https://img.example/{track_id}.jpg"}]},
        "artists": [{"id": artist_id, "name": f"Artist {artist_id}"}],
    }


def audio_features(track_id: str, *, energy: float = 0.5, tempo: float = 120.0) -> Dict[str, Any]:
    return {
        "id": track_id,
        "danceability": 0.6,
        "energy": energy,
        "speechiness": 0.05,
        "acousticness": 0.3,
        "instrumentalness": 0.0,
        "liveness": 0.1,
        "valence": 0.4,
        "tempo": tempo,
        "key": 5,
        "mode": 1,
        "loudness": -7.0,
        "duration_ms": 200000,
    }


@dataclass
class Catalog:
    """Upstream state shared by every stub client handed out in a test."""

    top: Dict[Tuple[str, str], List[Dict[str, Any]]] = field(default_factory=dict)
    artists: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tracks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    artist_top_tracks: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    features: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # token -> error raised by every top-list call made with that token
    token_errors: Dict[str, Exception] = field(default_factory=dict)
    rate_limited_calls: int = 0
    top_calls: int = 0
    lookups: List[Tuple[str, List[str]]] = field(default_factory=list)
    closed: int = 0

    def add_artist(self, artist_id: str, *, energy: float = 0.5) -> None:
        self.artists[artist_id] = {
            "id": artist_id,
            "name": f"Artist {artist_id}",
            "followers": {"total": 1000},
            "popularity": 60,
            "uri": f"spotify:artist:{artist_id}",
        }
        track_id = f"{artist_id}-hit"
        self.artist_top_tracks[artist_id] = [track_payload(track_id, artist_id)]
        self.tracks[track_id] = self.artist_top_tracks[artist_id][0]
        self.features[track_id] = audio_features(track_id, energy=energy)


def default_catalog() -> Catalog:
    catalog = Catalog()
    for artist_id, energy in (("a1", 0.2), ("a2", 0.5), ("a3", 0.9)):
        catalog.add_artist(artist_id, energy=energy)
    tracks = [track_payload("t1", "a1", popularity=70), track_payload("t2", "a3", popularity=40)]
    catalog.tracks.update((track["id"], track) for track in tracks)
    for time_range in ("short_term", "medium_term", "long_term"):
        catalog.top[("tracks", time_range)] = list(tracks)
        catalog.top[("artists", time_range)] = [catalog.artists["a1"], catalog.artists["a2"]]
    return catalog


class StubSpotifyClient:
    def __init__(self, token: str, catalog: Catalog) -> None:
        self.token = token
        self.catalog = catalog

    async def get_top_items(self, entity_type: str, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        self.catalog.top_calls += 1
        error = self.catalog.token_errors.get(self.token)
        if error is not None:
            raise error
        if self.catalog.rate_limited_calls > 0:
            self.catalog.rate_limited_calls -= 1
            raise SpotifyRateLimitError("rate limited", retry_after=0.0)
        return list(self.catalog.top.get((entity_type, time_range), []))[:limit]

    async def get_top_tracks(self, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.get_top_items("tracks", time_range, limit=limit)

    async def get_top_artists(self, time_range: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.get_top_items("artists", time_range, limit=limit)

    async def get_artists(self, artist_ids: Iterable[str]) -> List[Dict[str, Any]]:
        artist_ids = list(artist_ids)
        self.catalog.lookups.append(("artists", artist_ids))
        return [self.catalog.artists[a] for a in artist_ids if a in self.catalog.artists]

    async def get_tracks(self, track_ids: Iterable[str]) -> List[Dict[str, Any]]:
        track_ids = list(track_ids)
        self.catalog.lookups.append(("tracks", track_ids))
        return [self.catalog.tracks[t] for t in track_ids if t in self.catalog.tracks]

    async def get_artist_top_tracks(self, artist_id: str, market: str = "US") -> List[Dict[str, Any]]:
        return list(self.catalog.artist_top_tracks.get(artist_id, []))

    async def get_audio_features_bulk(self, track_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return [self.catalog.features[t] for t in track_ids if t in self.catalog.features]

    async def close(self) -> None:
        self.catalog.closed += 1


class StubTokenRefresher:
    def __init__(self, tokens: Dict[str, Tuple[str, str | None]] | None = None, *, error: Exception | None = None) -> None:
        self.tokens = tokens or {}
        self.error = error
        self.calls: List[str] = []

    async def __call__(self, refresh_token: str) -> Tuple[str, str | None]:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        if refresh_token not in self.tokens:
            raise SpotifyAuthError("refresh token rejected")
        return self.tokens[refresh_token]


class StubAppTokens:
    async def get(self) -> str:
        return "app-token"
