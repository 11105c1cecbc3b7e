from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound
from ..db import models
from ..db.base import utc_now

logger = logging.getLogger("users")


async def get_user_by_spotify_id(session: AsyncSession, spotify_id: str) -> models.User:
    result = await session.execute(select(models.User).where(models.User.spotify_id == spotify_id))
    user = result.scalars().first()
    if user is None:
        raise NotFound("user", [spotify_id])
    return user


async def register_user(
    session: AsyncSession,
    *,
    spotify_id: str,
    username: str,
    token: str,
    refresh_token: str,
) -> models.User:
    """Create the user on first authentication, or store fresh credentials on a repeat login."""
    if not token or not refresh_token:
        raise ValueError("both access and refresh tokens are required")
    result = await session.execute(select(models.User).where(models.User.spotify_id == spotify_id))
    user = result.scalars().first()
    now = utc_now()
    if user is None:
        user = models.User(
            spotify_id=spotify_id,
            username=username or spotify_id,
            token=token,
            refresh_token=refresh_token,
            creation_time=now,
            # epoch-ish so the first tick picks the new user up immediately
            last_update_time=now - timedelta(days=3650),
        )
        session.add(user)
        logger.info("Registered user %s", spotify_id)
    else:
        user.username = username or user.username
        user.token = token
        user.refresh_token = refresh_token
        user.active = True
        user.credential_failures = 0
    await session.flush()
    return user


async def store_credentials(session: AsyncSession, user: models.User, *, token: str, refresh_token: str | None = None) -> None:
    user.token = token
    if refresh_token:
        user.refresh_token = refresh_token
    user.credential_failures = 0
    await session.flush()


async def record_credential_failure(session: AsyncSession, user: models.User, *, max_failures: int) -> bool:
    """Count a failed refresh; returns True when the user has just been deactivated."""
    user.credential_failures = (user.credential_failures or 0) + 1
    deactivated = False
    if user.credential_failures >= max_failures and user.active:
        user.active = False
        deactivated = True
        logger.warning("Deactivating user %s after %s failed credential refreshes", user.spotify_id, user.credential_failures)
    await session.flush()
    return deactivated


async def list_due_users(session: AsyncSession, *, min_interval: timedelta, now: datetime | None = None) -> List[models.User]:
    cutoff = (now or utc_now()) - min_interval
    result = await session.execute(
        select(models.User)
        .where(models.User.active.is_(True), models.User.last_update_time <= cutoff)
        .order_by(models.User.last_update_time, models.User.id)
    )
    return list(result.scalars())


async def delete_user(session: AsyncSession, spotify_id: str) -> None:
    user = await get_user_by_spotify_id(session, spotify_id)
    # history rows go with the user through ON DELETE CASCADE
    await session.execute(delete(models.User).where(models.User.id == user.id))
    await session.commit()
    logger.info("Deleted user %s", spotify_id)
