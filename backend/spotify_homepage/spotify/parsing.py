from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

SPOTIFY_ID_RE = re.compile(r"^[A-Za-z0-9]{22}$")
SPOTIFY_URL_RE = re.compile(
    r"https?://(?:open|play)\.spotify\.com/(?:intl-[a-z]{2}(?:-[a-z]{2})?/)?(?P<type>track|artist)/(?P<id>[A-Za-z0-9]{22})",
    re.IGNORECASE,
)
SPOTIFY_URI_RE = re.compile(r"^spotify:(?P<type>track|artist):(?P<id>[A-Za-z0-9]{22})$", re.IGNORECASE)

EntityKind = Literal["track", "artist"]


@dataclass(slots=True)
class SpotifyEntity:
    kind: EntityKind
    id: str


def parse_spotify_ref(value: str, *, default_kind: EntityKind = "artist") -> SpotifyEntity:
    """Accept a bare id, a ``spotify:<kind>:<id>`` URI or an open.spotify.com URL."""
    value = value.strip()
    if SPOTIFY_ID_RE.match(value):
        return SpotifyEntity(kind=default_kind, id=value)
    m = SPOTIFY_URI_RE.match(value)
    if not m:
        m = SPOTIFY_URL_RE.search(value)
    if not m:
        raise ValueError("unsupported spotify reference")
    kind = m.group("type").lower()
    return SpotifyEntity(kind=kind, id=m.group("id"))


def parse_artist_id(value: str) -> str:
    entity = parse_spotify_ref(value, default_kind="artist")
    if entity.kind != "artist":
        raise ValueError(f"expected an artist, got a {entity.kind}")
    return entity.id


def parse_track_id(value: str) -> str:
    entity = parse_spotify_ref(value, default_kind="track")
    if entity.kind != "track":
        raise ValueError(f"expected a track, got a {entity.kind}")
    return entity.id
