from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, utc_now


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    creation_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_update_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    spotify_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    credential_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    track_history: Mapped[list["TrackHistoryEntry"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    artist_history: Mapped[list["ArtistHistoryEntry"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class SpotifyIdMapping(Base):
    __tablename__ = "spotify_id_mapping"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    spotify_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)


class TrackHistoryEntry(Base):
    __tablename__ = "track_history"
    __table_args__ = (
        UniqueConstraint("user_id", "timeframe", "update_time", "ranking", name="uq_track_history_batch_rank"),
        CheckConstraint("ranking >= 1", name="ck_track_history_ranking"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    update_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False)
    timeframe: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    ranking: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    user: Mapped[User] = relationship(back_populates="track_history")


class ArtistHistoryEntry(Base):
    __tablename__ = "artist_history"
    __table_args__ = (
        UniqueConstraint("user_id", "timeframe", "update_time", "ranking", name="uq_artist_history_batch_rank"),
        CheckConstraint("ranking >= 1", name="ck_artist_history_ranking"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    update_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False)
    timeframe: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    ranking: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    user: Mapped[User] = relationship(back_populates="artist_history")


class ArtistStats(Base):
    __tablename__ = "artist_stats_history"
    __table_args__ = (
        CheckConstraint("followers >= 0", name="ck_artist_stats_followers"),
        CheckConstraint("popularity >= 0", name="ck_artist_stats_popularity"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    spotify_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    followers: Mapped[int] = mapped_column(BigInteger, nullable=False)
    popularity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uri: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    vector_dim: Mapped[int] = mapped_column(Integer, nullable=False)
    top_tracks: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class TrackStatsSnapshot(Base):
    __tablename__ = "track_stats_history"
    __table_args__ = (
        CheckConstraint("popularity >= 0", name="ck_track_stats_popularity"),
        Index("ix_track_stats_ref_time", "track_ref", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    track_ref: Mapped[int] = mapped_column(Integer, ForeignKey("spotify_id_mapping.id"), nullable=False)
    popularity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    playcount: Mapped[int | None] = mapped_column(BigInteger)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
