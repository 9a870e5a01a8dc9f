"""Glucolink API: FastAPI application entry point.

Run locally:
    uvicorn glucolink.main:app --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from glucolink.config import get_settings
from glucolink.config_loader import get_monitoring_config
from glucolink.libreview.client import LibreViewClient, resolve_timezone
from glucolink.libreview.credentials import InMemoryCredentialStore
from glucolink.libreview.tokens import TokenManager
from glucolink.routers import account, health, profile, readings
from glucolink.store.reading_store import ReadingStore
from glucolink.sync.engine import SyncEngine
from glucolink.sync.scheduler import RefreshPoller

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("glucolink")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks: wire store → client → tokens → engine → poller."""
    settings = get_settings()
    config = get_monitoring_config()
    local_tz = resolve_timezone(settings.local_timezone)
    logger.info(
        "Starting Glucolink v%s [%s], store %s",
        settings.app_version,
        settings.environment,
        settings.resolved_database_path,
    )

    store = ReadingStore(settings.resolved_database_path)
    credentials = InMemoryCredentialStore.from_settings(settings)
    client = LibreViewClient(local_timezone=local_tz)
    tokens = TokenManager(client, credentials, lifetime=config.sync.token_lifetime)
    engine = SyncEngine(client, tokens, store, credentials, config=config, local_tz=local_tz)
    poller = RefreshPoller(engine)

    await engine.startup()
    if settings.poll_on_startup:
        poller.start()

    app.state.store = store
    app.state.credentials = credentials
    app.state.tokens = tokens
    app.state.engine = engine
    app.state.poller = poller
    yield
    await poller.stop()
    logger.info("Glucolink shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Glucolink API",
        description=(
            "Personal glucose monitoring: LibreView sync, local reading store, "
            "trends and statistics for menu bar and dashboard front-ends."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(readings.router, prefix=v1_prefix)
    app.include_router(profile.router, prefix=v1_prefix)
    app.include_router(account.router, prefix=v1_prefix)

    return app


app = create_app()
