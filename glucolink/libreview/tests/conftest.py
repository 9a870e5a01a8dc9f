"""Shared fixtures and realistic LibreLinkUp payloads for libreview tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from glucolink.libreview.client import LibreViewClient

FIXED_NOW = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)
TEST_BASE_URL = "https://api.test.libreview.io"
TEST_PATIENT_ID = "8f1c7a2e-0000-4bd0-9d6e-2f7c3a1b5e11"


def graph_entry(
    timestamp: str = "2/23/2026 8:00:00 AM",
    value: Any = 112,
    units: int | None = 1,
    **extra: Any,
) -> dict:
    """One graph entry in the shape LibreLinkUp returns."""
    entry = {
        "FactoryTimestamp": timestamp,
        "Timestamp": timestamp,
        "type": 0,
        "ValueInMgPerDl": value if isinstance(value, (int, float)) else 112,
        "MeasurementColor": 1,
        "Value": value,
        "isHigh": False,
        "isLow": False,
    }
    if units is not None:
        entry["GlucoseUnits"] = units
    entry.update(extra)
    return entry


def graph_payload(entries: list[dict]) -> dict:
    return {
        "status": 0,
        "data": {
            "connection": {"patientId": TEST_PATIENT_ID},
            "activeSensors": [],
            "graphData": entries,
        },
        "ticket": {"token": "refreshed", "expires": 1771848000, "duration": 15552000000},
    }


def login_payload(token: str = "token-abc") -> dict:
    return {
        "status": 0,
        "data": {
            "user": {"id": "user-1", "firstName": "Test"},
            "authTicket": {"token": token, "expires": 1771848000, "duration": 15552000000},
        },
    }


def connections_payload(*patient_ids: str) -> dict:
    return {
        "status": 0,
        "data": [{"patientId": pid, "firstName": "P", "lastName": str(i)} for i, pid in enumerate(patient_ids)],
    }


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def make_client(fixed_clock: Callable[[], datetime]) -> Callable[..., LibreViewClient]:
    """Build a LibreViewClient whose HTTP traffic is served by ``handler``."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> LibreViewClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return LibreViewClient(
            base_url=TEST_BASE_URL,
            product="llu.android",
            version="4.7.0",
            timeout_seconds=5.0,
            local_timezone="UTC",
            http_client=http_client,
            clock=fixed_clock,
        )

    return _make
