"""Shared fixtures for package-level tests: config, metrics, export and the API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from glucolink.config import Settings, get_settings
from glucolink.config_loader import MonitoringConfig, load_monitoring_config
from glucolink.libreview.base import AuthTicket, GlucoseUnit, Reading
from glucolink.libreview.credentials import InMemoryCredentialStore
from glucolink.libreview.tokens import TokenManager
from glucolink.main import create_app
from glucolink.store.reading_store import ReadingStore
from glucolink.sync.engine import SyncEngine
from glucolink.sync.scheduler import RefreshPoller

T0 = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)


def make_reading(
    reading_id: str,
    minutes: float = 0,
    value: float = 110.0,
    unit: GlucoseUnit = GlucoseUnit.MG_DL,
    **flags: bool,
) -> Reading:
    return Reading(
        id=reading_id,
        timestamp=T0 + timedelta(minutes=minutes),
        value=value,
        unit=unit,
        **flags,
    )


@pytest.fixture
def monitoring_config() -> MonitoringConfig:
    """The bundled monitoring_config.yaml."""
    return load_monitoring_config()


@dataclass
class ApiHarness:
    """Test client plus the objects parked on ``app.state``."""

    client: TestClient
    store: ReadingStore
    engine: SyncEngine
    poller: RefreshPoller
    tokens: TokenManager
    credentials: InMemoryCredentialStore
    libreview: MagicMock


@pytest.fixture
def api(tmp_path: Path, monitoring_config: MonitoringConfig) -> ApiHarness:
    """App with state wired by hand; the lifespan never runs."""
    libreview = MagicMock()
    libreview.login = AsyncMock(return_value=AuthTicket(token="tok"))
    libreview.list_connections = AsyncMock(return_value=["patient-1"])
    libreview.fetch_readings = AsyncMock(return_value=[])

    store = ReadingStore(tmp_path / "api.sqlite3")
    credentials = InMemoryCredentialStore("me@example.com", "secret")
    tokens = TokenManager(libreview, credentials)
    engine = SyncEngine(libreview, tokens, store, credentials, config=monitoring_config)
    poller = RefreshPoller(engine)

    app = create_app()
    app.state.store = store
    app.state.credentials = credentials
    app.state.tokens = tokens
    app.state.engine = engine
    app.state.poller = poller
    app.dependency_overrides[get_settings] = lambda: Settings(backup_dir=tmp_path / "backups")

    return ApiHarness(
        client=TestClient(app),
        store=store,
        engine=engine,
        poller=poller,
        tokens=tokens,
        credentials=credentials,
        libreview=libreview,
    )
