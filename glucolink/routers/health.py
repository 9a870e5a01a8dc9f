"""Health check endpoint."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from glucolink.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("glucolink.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight store check and reports the last refresh.
    """
    settings = get_settings()
    store = getattr(request.app.state, "store", None)
    engine = getattr(request.app.state, "engine", None)

    db_ok = False
    stored = None
    if store is not None:
        try:
            stored = await asyncio.to_thread(store.count)
            db_ok = True
        except sqlite3.Error as exc:
            logger.warning("Health check store probe failed: %s", exc)

    last_refresh = None
    if engine is not None:
        result = engine.last_result
        last_refresh = {
            "outcome": result.outcome.value,
            "message": result.message,
            "finished_at": result.finished_at.isoformat() if result.finished_at else None,
        }

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "stored_readings": stored,
        "last_refresh": last_refresh,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
