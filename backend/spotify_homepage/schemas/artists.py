from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..services.averaging import AverageArtistsResult
from ..services.vector_store import ArtistProfile


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TrackSummary(CamelModel):
    id: str
    title: str = ""
    artists: str = ""
    preview_url: Optional[str] = None
    album: str = ""
    image_url: Optional[str] = None
    uri: Optional[str] = None


class ArtistOut(CamelModel):
    id: str
    name: str = ""
    uri: str = ""
    followers: int = Field(0, ge=0)
    popularity: int = Field(0, ge=0)

    @classmethod
    def from_profile(cls, profile: ArtistProfile) -> "ArtistOut":
        return cls(
            id=profile.spotify_id,
            name=profile.name,
            uri=profile.uri,
            followers=profile.followers,
            popularity=profile.popularity,
        )


class AverageArtistItem(CamelModel):
    artist: ArtistOut
    top_tracks: List[TrackSummary] = []
    similarity_to_target_point: float = Field(..., ge=0.0, le=1.0)
    similarity_to_artist1: float = Field(..., ge=0.0, le=1.0)
    similarity_to_artist2: float = Field(..., ge=0.0, le=1.0)


class AverageArtistsResponse(CamelModel):
    artist1: ArtistOut
    artist2: ArtistOut
    artists: List[AverageArtistItem] = []
    similarity: float = Field(..., ge=0.0, le=1.0)
    distance: float = Field(..., ge=0.0, le=1.0)
    empty_corpus: bool = False

    @classmethod
    def from_result(cls, result: AverageArtistsResult) -> "AverageArtistsResponse":
        return cls(
            artist1=ArtistOut.from_profile(result.artist1),
            artist2=ArtistOut.from_profile(result.artist2),
            artists=[
                AverageArtistItem(
                    artist=ArtistOut.from_profile(candidate.artist),
                    top_tracks=[TrackSummary(**track) for track in candidate.top_tracks if track.get("id")],
                    similarity_to_target_point=candidate.similarity_to_midpoint,
                    similarity_to_artist1=candidate.similarity_to_artist1,
                    similarity_to_artist2=candidate.similarity_to_artist2,
                )
                for candidate in result.candidates
            ],
            similarity=result.pair_similarity,
            distance=result.pair_distance,
            empty_corpus=result.empty_corpus,
        )
