"""Bitácora FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bitacora import config
from bitacora.db import connection, sqlite_migrations
from bitacora.db.repositories import SqliteCacheEntryRepository
from bitacora.db.store import SqlitePersistentStore
from bitacora.db.sync_engine import SyncEngine
from bitacora.observability import initialize as initialize_observability, shutdown as shutdown_observability
from bitacora.routers.cache import cache_router
from bitacora.routers.captures import captures_router
from bitacora.routers.library import library_router
from bitacora.services.cache import VersionedCache
from bitacora.services.classifier import OpenAIClassificationService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("bitacora")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Bitácora backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await sqlite_migrations.run_migrations(db)

    # 3. Wire the engine; the cache keeps its own connection outside store transactions
    cache_db = await connection.open_connection(connection.DB_PATH)
    cache = VersionedCache(SqliteCacheEntryRepository(cache_db))
    removed = await cache.clear_expired()
    if removed:
        logger.info("Dropped %d stale cache record(s) at startup", removed)
    if not config.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; captures will fail classification")
    app.state.sync_engine = SyncEngine(
        store=SqlitePersistentStore(db),
        classifier=OpenAIClassificationService(),
        cache=cache,
    )

    yield

    logger.info("Bitácora backend shutting down")
    await app.state.sync_engine.drain_background()
    shutdown_observability(app)
    await cache_db.close()
    await connection.close_connection()


app = FastAPI(
    title="Bitácora API",
    description="Capture, classification routing and optimistic sync for notebook entries",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(captures_router)
app.include_router(library_router)
app.include_router(cache_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    engine = getattr(app.state, "sync_engine", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "engine": "ready" if engine else "starting",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("bitacora.main:app", host=config.HOST, port=config.PORT)
