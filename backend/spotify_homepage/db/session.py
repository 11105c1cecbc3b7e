from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import get_settings
from . import models  # noqa: F401  registers tables on Base.metadata
from .base import Base

settings = get_settings()


def build_engine(dsn: str, *, echo: bool = False, **engine_kwargs: Any) -> AsyncEngine:
    engine = create_async_engine(dsn, future=True, echo=echo, pool_pre_ping=not dsn.startswith("sqlite"), **engine_kwargs)
    if engine.dialect.name == "sqlite":
        # history rows rely on ON DELETE CASCADE
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = build_engine(settings.postgres_dsn, echo=settings.environment == "development" and settings.log_level.upper() == "DEBUG")
AsyncSessionFactory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionFactory() as session:
        yield session


async def init_db(target: AsyncEngine | None = None) -> None:
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
