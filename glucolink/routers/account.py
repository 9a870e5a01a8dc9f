"""Credential management and medical export endpoints."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Query

from glucolink.dependencies import Credentials, Engine, Store, Tokens
from glucolink.export import build_medical_export
from glucolink.libreview.errors import USER_MESSAGES, ErrorKind
from glucolink.models.patient import CredentialCheckRead, CredentialsUpdate

router = APIRouter(tags=["account"])


# ---------- Credentials ----------

@router.put("/credentials", response_model=CredentialCheckRead)
async def set_credentials(
    body: CredentialsUpdate, credentials: Credentials, tokens: Tokens
) -> Any:
    """Store new credentials and verify them with a fresh login."""
    credentials.set(body.username, body.password)
    if await tokens.check_authentication():
        return CredentialCheckRead(success=True, message="Credentials verified")
    return CredentialCheckRead(
        success=False, message=USER_MESSAGES[ErrorKind.AUTHENTICATION_FAILED]
    )


@router.delete("/credentials", status_code=204)
async def clear_credentials(credentials: Credentials, tokens: Tokens) -> None:
    credentials.clear()
    tokens.invalidate()


# ---------- Export ----------

@router.get("/export")
async def medical_export(
    store: Store,
    engine: Engine,
    days: int = Query(default=90, ge=1, le=3650),
) -> dict:
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    profile = await asyncio.to_thread(store.get_profile)
    readings = await asyncio.to_thread(store.fetch_range, start, end)
    shots = await asyncio.to_thread(store.insulin_shots_between, start, end)
    config = engine.config
    return build_medical_export(
        profile,
        readings,
        shots,
        unit=config.display.unit,
        low=config.thresholds.low,
        high=config.thresholds.high,
        now=end,
    )
