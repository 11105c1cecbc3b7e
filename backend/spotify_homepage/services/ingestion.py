from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..cache.redis import acquire_lock, drain_missing_artists, enqueue_missing_artists, release_lock
from ..core.config import Settings, get_settings
from ..core.errors import BatchEmpty, DimensionMismatch, NotFound
from ..core.logging import with_context
from ..db import models
from ..db.base import utc_now
from ..spotify.client import (
    AppTokenCache,
    SpotifyAuthError,
    SpotifyClient,
    SpotifyClientError,
    SpotifyRateLimitError,
    refresh_user_token,
)
from .features import fetch_artist_profiles
from .history import HistoryKind, HistorySnapshotStore, Timeframe
from .identity import IdentityMap, identity_map
from .users import list_due_users, record_credential_failure, store_credentials
from .vector_store import ArtistProfile, FeatureVectorStore

logger = logging.getLogger("ingestion")

T = TypeVar("T")
ClientFactory = Callable[[str], SpotifyClient]
TokenRefresher = Callable[[str], Awaitable[Tuple[str, Optional[str]]]]
TopLists = Dict[Tuple[HistoryKind, Timeframe], List[Dict[str, Any]]]


class IngestState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    WRITING = "writing"
    FAILED = "failed"


@dataclass(slots=True)
class CycleResult:
    user_id: int
    spotify_id: str
    transitions: List[IngestState] = field(default_factory=list)
    succeeded: bool = False
    skipped: bool = False
    error: str | None = None
    batches_written: int = 0
    artists_refreshed: int = 0
    timestamp: datetime | None = None


class IngestionScheduler:
    """Snapshots every due user's top lists, one bounded async job per user.

    A job walks IDLE -> FETCHING -> WRITING -> IDLE, or ends in FAILED -> IDLE;
    a failed user is simply due again on the next tick. One user's failure never
    touches another user's job.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        settings: Settings | None = None,
        *,
        client_factory: ClientFactory | None = None,
        token_refresher: TokenRefresher | None = None,
        app_tokens: AppTokenCache | None = None,
        identity: IdentityMap | None = None,
        history: HistorySnapshotStore | None = None,
        store: FeatureVectorStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (lambda token: SpotifyClient.from_settings(token, self.settings))
        self.token_refresher = token_refresher or (lambda refresh_token: refresh_user_token(self.settings, refresh_token))
        self.app_tokens = app_tokens or AppTokenCache(self.settings)
        self.identity = identity or identity_map
        self.history = history or HistorySnapshotStore()
        self.store = store or FeatureVectorStore(self.settings)
        self.clock = clock
        self.states: Dict[int, IngestState] = {}

    def _transition(self, result: CycleResult, state: IngestState) -> None:
        self.states[result.user_id] = state
        result.transitions.append(state)

    def _fail(self, result: CycleResult, error: str) -> None:
        result.succeeded = False
        result.error = error
        if not result.transitions or result.transitions[-1] != IngestState.FAILED:
            self._transition(result, IngestState.FAILED)

    async def _retrying(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = self.settings.ingest_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except SpotifyRateLimitError as exc:
                if attempt == attempts:
                    raise
                delay = max(self.settings.ingest_backoff_seconds * 2 ** (attempt - 1), exc.retry_after or 0.0)
                logger.warning("Rate limited fetching %s (attempt %s/%s); backing off %.1fs", label, attempt, attempts, delay)
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    # -- scheduling -----------------------------------------------------

    async def run_tick(self) -> List[CycleResult]:
        async with self.session_factory() as session:
            users = await list_due_users(session, min_interval=timedelta(seconds=self.settings.min_update_interval_seconds))
            targets = [(user.id, user.spotify_id) for user in users]

        logger.info("Ingestion tick: %s due users", len(targets))
        semaphore = asyncio.Semaphore(self.settings.ingest_concurrency)
        results = await asyncio.gather(*(self._bounded(semaphore, user_id, spotify_id) for user_id, spotify_id in targets))

        try:
            await self.ingest_pending_artists()
        except Exception:  # pragma: no cover - pending artists are retried on a later tick
            logger.exception("Pending artist ingestion failed")

        succeeded = sum(1 for r in results if r.succeeded)
        failed = sum(1 for r in results if r.error)
        logger.info("Ingestion tick finished: %s succeeded, %s failed, %s skipped", succeeded, failed, len(results) - succeeded - failed)
        return list(results)

    async def _bounded(self, semaphore: asyncio.Semaphore, user_id: int, spotify_id: str) -> CycleResult:
        result = CycleResult(user_id=user_id, spotify_id=spotify_id)
        async with semaphore:
            try:
                await asyncio.wait_for(self.run_user(result), timeout=self.settings.ingest_job_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("Ingestion for user %s timed out after %ss", spotify_id, self.settings.ingest_job_timeout_seconds)
                self._fail(result, "timed out")
            except Exception as exc:  # isolation: never let one user abort the tick
                logger.exception("Ingestion for user %s crashed", spotify_id)
                self._fail(result, str(exc) or exc.__class__.__name__)
            finally:
                if result.transitions:
                    self._transition(result, IngestState.IDLE)
        return result

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        interval = self.settings.ingest_interval_seconds
        logger.info("Ingestion scheduler started (every %ss, %s workers)", interval, self.settings.ingest_concurrency)
        while not stop_event.is_set():
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Ingestion tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Ingestion scheduler stopped")

    # -- one user -------------------------------------------------------

    async def run_user(self, result: CycleResult) -> CycleResult:
        log = with_context(logger, user_id=result.user_id, spotify_id=result.spotify_id)
        lock_key = f"ingest:user:{result.user_id}"
        try:
            locked = await acquire_lock(self.redis, lock_key, ttl=self.settings.ingest_lock_ttl_seconds)
        except RedisError as exc:
            # nothing was attempted; the user stays due for the next tick
            log.warning("Could not lock ingestion for %s: %s", result.spotify_id, exc)
            result.skipped = True
            return result
        if not locked:
            log.info("Ingestion already running for %s; skipping", result.spotify_id)
            result.skipped = True
            return result
        try:
            self._transition(result, IngestState.FETCHING)
            try:
                top_lists, token = await self._fetch_with_credentials(result.user_id)
                profiles = await self._fetch_stale_artists(token, top_lists)
            except DimensionMismatch as exc:
                log.critical("Corpus integrity violation while ingesting %s: %s", result.spotify_id, exc)
                self._fail(result, str(exc))
                return result
            except (SpotifyClientError, NotFound) as exc:
                log.warning("Fetching stats for %s failed: %s", result.spotify_id, exc)
                self._fail(result, str(exc))
                return result

            self._transition(result, IngestState.WRITING)
            timestamp = self.clock()
            result.batches_written = await self._write(result.user_id, top_lists, profiles, timestamp)
            result.artists_refreshed = len(profiles)
            result.timestamp = timestamp
            result.succeeded = True
            log.info(
                "Stored %s batches and refreshed %s artists for %s",
                result.batches_written,
                result.artists_refreshed,
                result.spotify_id,
            )
            return result
        finally:
            try:
                await release_lock(self.redis, lock_key)
            except RedisError as exc:
                log.warning("Could not release %s, it expires after %ss: %s", lock_key, self.settings.ingest_lock_ttl_seconds, exc)

    async def _fetch_top_lists(self, token: str) -> TopLists:
        client = self.client_factory(token)
        jobs = [(kind, timeframe) for kind in HistoryKind for timeframe in Timeframe]
        limit = self.settings.top_items_limit
        fetchers = {HistoryKind.TRACKS: client.get_top_tracks, HistoryKind.ARTISTS: client.get_top_artists}
        try:
            fetched = await asyncio.gather(
                *(
                    self._retrying(
                        f"top {kind.value} ({timeframe.value})",
                        lambda kind=kind, timeframe=timeframe: fetchers[kind](timeframe.time_range, limit=limit),
                    )
                    for kind, timeframe in jobs
                ),
                return_exceptions=True,
            )
        finally:
            await client.close()
        for outcome in fetched:
            if isinstance(outcome, BaseException):
                raise outcome
        return dict(zip(jobs, fetched))

    async def _load_credentials(self, user_id: int) -> Tuple[str, str, str]:
        async with self.session_factory() as session:
            user = await session.get(models.User, user_id)
            if user is None or not user.active:
                raise NotFound("active user", [user_id])
            return user.spotify_id, user.token, user.refresh_token

    async def _save_credentials(self, user_id: int, *, token: str | None = None, refresh_token: str | None = None) -> None:
        """Store refreshed credentials, or count a rejected refresh token when ``token`` is None."""
        async with self.session_factory.begin() as session:
            user = await session.get(models.User, user_id)
            if user is None:
                raise NotFound("user", [user_id])
            if token is None:
                await record_credential_failure(session, user, max_failures=self.settings.max_credential_failures)
            else:
                await store_credentials(session, user, token=token, refresh_token=refresh_token)

    async def _fetch_with_credentials(self, user_id: int) -> Tuple[TopLists, str]:
        # no session stays open across upstream calls
        spotify_id, token, refresh_token = await self._load_credentials(user_id)
        try:
            return await self._fetch_top_lists(token), token
        except SpotifyAuthError:
            logger.info("Access token for %s rejected; refreshing", spotify_id)

        # only a rejected grant counts; network, 5xx and 429 from the token endpoint just fail the cycle
        try:
            token, rotated = await self.token_refresher(refresh_token)
        except SpotifyAuthError:
            await self._save_credentials(user_id)
            raise
        await self._save_credentials(user_id, token=token, refresh_token=rotated)

        try:
            return await self._fetch_top_lists(token), token
        except SpotifyAuthError:
            await self._save_credentials(user_id)
            raise

    def _observed_artists(self, top_lists: TopLists) -> Tuple[List[str], Dict[str, Dict[str, Any]]]:
        ordered: Dict[str, None] = {}
        payloads: Dict[str, Dict[str, Any]] = {}
        for (kind, _), items in top_lists.items():
            for item in items:
                if kind == HistoryKind.ARTISTS:
                    ordered.setdefault(item["id"])
                    payloads[item["id"]] = item
                else:
                    primary = next((a for a in item.get("artists") or [] if a and a.get("id")), None)
                    if primary:
                        ordered.setdefault(primary["id"])
        return list(ordered), payloads

    async def _fetch_stale_artists(self, token: str, top_lists: TopLists) -> List[ArtistProfile]:
        artist_ids, payloads = self._observed_artists(top_lists)
        async with self.session_factory() as session:
            stale = await self.store.stale_ids(
                session, artist_ids, max_age=timedelta(seconds=self.settings.artist_refresh_max_age_seconds)
            )
        todo = [artist_id for artist_id in artist_ids if artist_id in stale][: self.settings.artist_refresh_limit]
        if not todo:
            return []

        client = self.client_factory(token)
        try:
            profiles = await self._retrying(
                "artist profiles",
                lambda: fetch_artist_profiles(client, todo, self.settings, known_payloads=payloads),
            )
        except (SpotifyAuthError, SpotifyRateLimitError):
            raise
        except SpotifyClientError as exc:
            # snapshots still get written; the artists are stale again next tick
            logger.warning("Artist refresh skipped: %s", exc)
            return []
        finally:
            await client.close()
        for profile in profiles:
            self.store.validate(profile)
        return profiles

    async def _write(self, user_id: int, top_lists: TopLists, profiles: List[ArtistProfile], timestamp: datetime) -> int:
        written = 0
        async with self.session_factory.begin() as session:
            user = await session.get(models.User, user_id)
            if user is None:
                raise NotFound("user", [user_id])
            seen_ids: List[str] = []
            tracks: Dict[str, Dict[str, Any]] = {}
            for (kind, timeframe), items in top_lists.items():
                ranked_ids = [item["id"] for item in items]
                seen_ids.extend(ranked_ids)
                if kind == HistoryKind.TRACKS:
                    tracks.update((item["id"], item) for item in items)
                try:
                    await self.history.write_batch(session, user_id, kind, timeframe, timestamp, ranked_ids)
                    written += 1
                except BatchEmpty:
                    continue
            await self.identity.resolve_many(session, seen_ids)
            await self.history.record_track_stats(session, self.identity, list(tracks.values()), timestamp)
            for profile in profiles:
                await self.store.upsert(session, profile)
            user.last_update_time = timestamp
        return written

    # -- read-path misses ----------------------------------------------

    async def ingest_pending_artists(self) -> int:
        ids = await drain_missing_artists(self.redis, self.settings.pending_artist_batch_size)
        if not ids:
            return 0
        async with self.session_factory() as session:
            stale = await self.store.stale_ids(
                session, ids, max_age=timedelta(seconds=self.settings.artist_refresh_max_age_seconds)
            )
        todo = [artist_id for artist_id in ids if artist_id in stale]
        if not todo:
            return 0

        try:
            token = await self.app_tokens.get()
            client = self.client_factory(token)
            try:
                profiles = await self._retrying("pending artists", lambda: fetch_artist_profiles(client, todo, self.settings))
            finally:
                await client.close()
        except SpotifyClientError as exc:
            logger.warning("Could not ingest %s pending artists: %s", len(todo), exc)
            await enqueue_missing_artists(self.redis, todo)
            return 0

        valid: List[ArtistProfile] = []
        retry: List[str] = []
        for profile in profiles:
            try:
                self.store.validate(profile)
            except DimensionMismatch as exc:
                logger.warning("Re-queueing pending artist %s: %s", profile.spotify_id, exc)
                retry.append(profile.spotify_id)
            except ValueError as exc:
                logger.warning("Dropping pending artist %s: %s", profile.spotify_id, exc)
            else:
                valid.append(profile)
        if retry:
            await enqueue_missing_artists(self.redis, retry)

        try:
            async with self.session_factory.begin() as session:
                for profile in valid:
                    await self.store.upsert(session, profile)
        except Exception:
            await enqueue_missing_artists(self.redis, [profile.spotify_id for profile in valid])
            raise
        logger.info("Ingested %s of %s pending artists", len(valid), len(todo))
        return len(valid)
