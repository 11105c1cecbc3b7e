from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import admin, artists, health, stats
from .cache.redis import redis
from .core.config import get_settings
from .core.logging import setup_logging
from .db.session import AsyncSessionFactory, init_db
from .services.ingestion import IngestionScheduler
from .spotify.client import AppTokenCache

logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db()
    app.state.app_tokens = AppTokenCache(settings)
    app.state.scheduler = IngestionScheduler(AsyncSessionFactory, redis, settings, app_tokens=app.state.app_tokens)
    stop_event = asyncio.Event()
    task = None
    if settings.scheduler_enabled:
        task = asyncio.create_task(app.state.scheduler.run_forever(stop_event))
    yield
    stop_event.set()
    if task is not None:
        try:
            await asyncio.wait_for(task, timeout=settings.ingest_job_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Ingestion scheduler did not stop in time; cancelling")
            task.cancel()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)
    app = FastAPI(
        title="Spotify Homepage Backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    app.include_router(health.router)
    app.include_router(artists.router)
    app.include_router(stats.router)
    app.include_router(admin.router)
    return app


app = create_app()
