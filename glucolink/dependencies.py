"""Shared FastAPI dependencies injected into route handlers.

The lifespan in ``glucolink.main`` builds one store, token manager, engine and
poller per process and parks them on ``app.state``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from glucolink.config import Settings, get_settings
from glucolink.libreview.credentials import CredentialStore
from glucolink.libreview.tokens import TokenManager
from glucolink.store.reading_store import ReadingStore
from glucolink.sync.engine import SyncEngine
from glucolink.sync.scheduler import RefreshPoller


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"Service not initialised ({name})")
    return value


def get_store(request: Request) -> ReadingStore:
    return _state(request, "store")


def get_engine(request: Request) -> SyncEngine:
    return _state(request, "engine")


def get_poller(request: Request) -> RefreshPoller:
    return _state(request, "poller")


def get_tokens(request: Request) -> TokenManager:
    return _state(request, "tokens")


def get_credentials(request: Request) -> CredentialStore:
    return _state(request, "credentials")


# Annotated shortcuts for route signatures
Store = Annotated[ReadingStore, Depends(get_store)]
Engine = Annotated[SyncEngine, Depends(get_engine)]
Poller = Annotated[RefreshPoller, Depends(get_poller)]
Tokens = Annotated[TokenManager, Depends(get_tokens)]
Credentials = Annotated[CredentialStore, Depends(get_credentials)]
AppSettings = Annotated[Settings, Depends(get_settings)]
