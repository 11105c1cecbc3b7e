from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound
from ..db import models
from ..db.upsert import insert_for

logger = logging.getLogger("identity")


class IdentityMap:
    """Binds Spotify ids to compact integer keys.

    Bindings are created lazily, inside the caller's transaction, and never
    change afterwards. The table is an index-size optimisation only: it can be
    rebuilt from the external ids stored in the history tables.
    """

    async def _existing(self, session: AsyncSession, external_ids: List[str]) -> Dict[str, int]:
        if not external_ids:
            return {}
        result = await session.execute(
            select(models.SpotifyIdMapping.spotify_id, models.SpotifyIdMapping.id).where(
                models.SpotifyIdMapping.spotify_id.in_(external_ids)
            )
        )
        return {spotify_id: surrogate_id for spotify_id, surrogate_id in result.all()}

    async def find(self, session: AsyncSession, external_id: str) -> int | None:
        return (await self._existing(session, [external_id])).get(external_id)

    async def resolve(self, session: AsyncSession, external_id: str) -> int:
        resolved = await self.resolve_many(session, [external_id])
        return resolved[external_id]

    async def resolve_many(self, session: AsyncSession, external_ids: Iterable[str]) -> Dict[str, int]:
        wanted = list(dict.fromkeys(i for i in external_ids if i))
        bindings = await self._existing(session, wanted)
        missing = [i for i in wanted if i not in bindings]
        if missing:
            # Losing an insert race is fine: DO NOTHING, then read back the winner's row.
            stmt = insert_for(session, models.SpotifyIdMapping).values([{"spotify_id": i} for i in missing])
            await session.execute(stmt.on_conflict_do_nothing(index_elements=["spotify_id"]))
            bindings.update(await self._existing(session, missing))
            logger.debug("Bound %s new spotify ids", len(missing))
        return {i: bindings[i] for i in wanted}

    async def lookup(self, session: AsyncSession, surrogate_id: int) -> str:
        row = await session.get(models.SpotifyIdMapping, surrogate_id)
        if row is None:
            raise NotFound("spotify id mapping", [surrogate_id])
        return row.spotify_id

    async def lookup_many(self, session: AsyncSession, surrogate_ids: Iterable[int]) -> Dict[int, str]:
        ids = list(set(surrogate_ids))
        if not ids:
            return {}
        result = await session.execute(
            select(models.SpotifyIdMapping.id, models.SpotifyIdMapping.spotify_id).where(models.SpotifyIdMapping.id.in_(ids))
        )
        found = {surrogate_id: spotify_id for surrogate_id, spotify_id in result.all()}
        unknown = [i for i in ids if i not in found]
        if unknown:
            raise NotFound("spotify id mapping", sorted(unknown))
        return found


identity_map = IdentityMap()
