from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from conftest import make_settings
from spotify_homepage.spotify.client import (
    AppTokenCache,
    SpotifyAuthError,
    SpotifyClient,
    SpotifyClientError,
    SpotifyRateLimitError,
    refresh_user_token,
)


def _client(handler, *, retries: int = 3) -> SpotifyClient:
    return SpotifyClient(access_token="user-token", retries=retries, max_retry_after=0.0, transport=httpx.MockTransport(handler))


def test_top_items_request_shape():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": [{"id": "t1"}, None, {"name": "no id"}]})

    async def run():
        async with _client(handler) as client:
            return await client.get_top_tracks("short_term", limit=80)

    items = asyncio.run(run())
    assert items == [{"id": "t1"}]
    request = seen[0]
    assert request.url.path == "/v1/me/top/tracks"
    assert request.url.params["time_range"] == "short_term"
    assert request.url.params["limit"] == "50"
    assert request.headers["Authorization"] == "Bearer user-token"


def test_rate_limit_is_retried():
    responses = [httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(200, json={"items": [{"id": "a1"}]})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async def run():
        async with _client(handler) as client:
            return await client.get_top_artists("long_term")

    assert asyncio.run(run()) == [{"id": "a1"}]
    assert responses == []


def test_rate_limit_budget_exhausted():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "3"})

    async def run():
        async with _client(handler, retries=2) as client:
            await client.get_artist_top_tracks("a1")

    with pytest.raises(SpotifyRateLimitError) as info:
        asyncio.run(run())
    assert info.value.retry_after == 3.0
    assert len(calls) == 2


@pytest.mark.parametrize("status, error", [(401, SpotifyAuthError), (404, SpotifyClientError), (502, SpotifyClientError)])
def test_error_statuses(status, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"status": status}})

    async def run():
        async with _client(handler) as client:
            await client.get_artists(["a1"])

    with pytest.raises(error):
        asyncio.run(run())


def test_bulk_endpoints_are_chunked():
    batches: List[List[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        ids = request.url.params["ids"].split(",")
        batches.append(ids)
        if request.url.path.endswith("/artists"):
            return httpx.Response(200, json={"artists": [{"id": i} for i in ids]})
        return httpx.Response(200, json={"audio_features": [{"id": i} for i in ids] + [None]})

    async def run():
        async with _client(handler) as client:
            artists = await client.get_artists([f"a{i}" for i in range(120)] + ["a0"])
            features = await client.get_audio_features_bulk([f"t{i}" for i in range(150)])
            return artists, features

    artists, features = asyncio.run(run())
    assert len(artists) == 120
    assert len(features) == 150
    assert [len(b) for b in batches] == [50, 50, 20, 100, 50]


def test_tracks_lookup_is_batched():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        ids = request.url.params["ids"].split(",")
        return httpx.Response(200, json={"tracks": [{"id": i} for i in ids if i != "gone"] + [None]})

    async def run():
        async with _client(handler) as client:
            return await client.get_tracks([f"t{i}" for i in range(60)] + ["t0", "gone", ""])

    tracks = asyncio.run(run())
    assert len(tracks) == 60
    assert {r.url.path for r in seen} == {"/v1/tracks"}
    assert [len(r.url.params["ids"].split(",")) for r in seen] == [50, 11]


def test_refresh_user_token():
    def handler(request: httpx.Request) -> httpx.Response:
        body = request.content.decode()
        assert "grant_type=refresh_token" in body
        if "refresh_token=good" in body:
            return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "rotated"})
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"})

    settings = make_settings()
    transport = httpx.MockTransport(handler)
    assert asyncio.run(refresh_user_token(settings, "good", transport=transport)) == ("fresh", "rotated")
    with pytest.raises(SpotifyAuthError):
        asyncio.run(refresh_user_token(settings, "bad", transport=transport))


def test_refresh_requires_client_credentials():
    settings = make_settings(spotify_client_id="", spotify_client_secret="")
    with pytest.raises(SpotifyClientError):
        asyncio.run(refresh_user_token(settings, "anything"))


def test_app_token_is_cached():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"access_token": f"app-{len(calls)}", "expires_in": 3600})

    async def run():
        cache = AppTokenCache(make_settings(), transport=httpx.MockTransport(handler))
        return [await cache.get(), await cache.get()]

    assert asyncio.run(run()) == ["app-1", "app-1"]
    assert len(calls) == 1
