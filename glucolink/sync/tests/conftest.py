"""Shared fixtures for sync engine, poller and dedup tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from glucolink.config_loader import MonitoringConfig, _validate_and_build
from glucolink.libreview.base import GlucoseUnit, Reading
from glucolink.libreview.credentials import InMemoryCredentialStore
from glucolink.store.reading_store import ReadingStore

T0 = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)


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


def build_config(**sections: dict[str, Any]) -> MonitoringConfig:
    """Monitoring config from defaults plus the given YAML sections."""
    return _validate_and_build(dict(sections))


class Clock:
    """Settable time source."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path: Path) -> ReadingStore:
    return ReadingStore(tmp_path / "glucolink.sqlite3")


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore("me@example.com", "secret")


@pytest.fixture
def client() -> MagicMock:
    """LibreView client double with one connection and an empty graph."""
    mock = MagicMock()
    mock.login = AsyncMock()
    mock.list_connections = AsyncMock(return_value=["patient-1"])
    mock.fetch_readings = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def tokens() -> MagicMock:
    mock = MagicMock()
    mock.get_valid_token = AsyncMock(return_value="tok")
    return mock
