from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
from sklearn.preprocessing import normalize

from ..core.config import Settings
from ..spotify.client import SpotifyAuthError, SpotifyClient, SpotifyClientError, SpotifyRateLimitError
from .vector_store import ArtistProfile

logger = logging.getLogger("features")

# (key, default, scale): value / scale keeps every component roughly in [-1, 1]
FEATURE_SPEC: Sequence[tuple[str, float, float]] = (
    ("danceability", 0.0, 1.0),
    ("energy", 0.0, 1.0),
    ("speechiness", 0.0, 1.0),
    ("acousticness", 0.0, 1.0),
    ("instrumentalness", 0.0, 1.0),
    ("liveness", 0.0, 1.0),
    ("valence", 0.0, 1.0),
    ("tempo", 0.0, 250.0),
    ("key", -1.0, 11.0),
    ("mode", 0.0, 1.0),
    ("loudness", -60.0, 60.0),
    ("duration_ms", 0.0, 1000.0 * 60.0 * 10.0),
)
FEATURE_DIM = len(FEATURE_SPEC)


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def build_feature_vector(audio_features: Dict[str, Any]) -> np.ndarray:
    af = audio_features or {}
    values = [_coerce_float(af.get(key, default), default) / scale for key, default, scale in FEATURE_SPEC]
    vector = np.array(values, dtype=np.float32)
    return np.nan_to_num(vector, nan=0.0, posinf=1.0, neginf=-1.0)


def build_artist_vector(track_features: Iterable[Dict[str, Any]]) -> Optional[np.ndarray]:
    """Mean of the per-track vectors of an artist's top tracks, L2-normalised."""
    vectors = [build_feature_vector(features) for features in track_features if features]
    if not vectors:
        return None
    centroid = np.mean(np.stack(vectors), axis=0).reshape(1, -1)
    return normalize(centroid)[0].astype(np.float32)


def _first_image(images: Iterable[Dict[str, Any]] | None) -> Optional[str]:
    if not images:
        return None
    return next((img.get("url") for img in images if img and img.get("url")), None)


def summarize_track(payload: Dict[str, Any]) -> Dict[str, Any]:
    album = payload.get("album") or {}
    return {
        "id": payload.get("id"),
        "title": payload.get("name") or "",
        "artists": ", ".join(a.get("name", "") for a in payload.get("artists") or [] if a),
        "preview_url": payload.get("preview_url"),
        "album": album.get("name") or "",
        "image_url": _first_image(album.get("images")),
        "uri": payload.get("uri"),
    }


def summarize_artist(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": payload.get("id"),
        "name": payload.get("name") or "",
        "uri": payload.get("uri") or "",
        "followers": int((payload.get("followers") or {}).get("total") or 0),
        "popularity": int(payload.get("popularity") or 0),
        "genres": list(payload.get("genres") or []),
        "image_url": _first_image(payload.get("images")),
    }


async def fetch_artist_profiles(
    client: SpotifyClient,
    artist_ids: Sequence[str],
    settings: Settings,
    *,
    known_payloads: Dict[str, Dict[str, Any]] | None = None,
) -> List[ArtistProfile]:
    """Build fresh profiles (stats, vector, top tracks) for the given artists.

    Artists whose top tracks have no audio features are skipped; they cannot be
    placed in feature space.
    """
    payloads = {k: v for k, v in (known_payloads or {}).items() if k in artist_ids}
    missing = [artist_id for artist_id in artist_ids if artist_id not in payloads]
    if missing:
        for artist in await client.get_artists(missing):
            payloads[artist["id"]] = artist

    profiles: List[ArtistProfile] = []
    for artist_id in artist_ids:
        artist = payloads.get(artist_id)
        if artist is None:
            logger.warning("Artist %s unknown upstream", artist_id)
            continue
        top_tracks = await client.get_artist_top_tracks(artist_id, market=settings.artist_top_tracks_market)
        top_tracks = top_tracks[: settings.artist_top_tracks_limit]
        try:
            features = await client.get_audio_features_bulk([t["id"] for t in top_tracks])
        except (SpotifyAuthError, SpotifyRateLimitError):
            raise
        except SpotifyClientError as exc:
            logger.warning("Audio features unavailable for artist %s: %s", artist_id, exc)
            features = []
        vector = build_artist_vector(features)
        if vector is None:
            logger.warning("No audio features for artist %s; not adding to corpus", artist_id)
            continue
        profiles.append(
            ArtistProfile(
                spotify_id=artist_id,
                vector=vector,
                followers=max(int((artist.get("followers") or {}).get("total") or 0), 0),
                popularity=max(int(artist.get("popularity") or 0), 0),
                uri=artist.get("uri") or f"spotify:artist:{artist_id}",
                name=artist.get("name") or "",
                top_tracks=[summarize_track(t) for t in top_tracks],
            )
        )
    return profiles
