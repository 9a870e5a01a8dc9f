"""Shared fixtures for store tests."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

import pytest

from glucolink.libreview.base import GlucoseUnit, Reading
from glucolink.store.reading_store import ReadingStore

BASE_TIME = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)


def make_reading(
    reading_id: str,
    offset: timedelta = timedelta(0),
    value: float = 110.0,
    unit: GlucoseUnit = GlucoseUnit.MG_DL,
) -> Reading:
    return Reading(id=reading_id, timestamp=BASE_TIME + offset, value=value, unit=unit)


def seed_rows(db_path: Path, readings: Iterable[Reading]) -> None:
    """Write rows straight into the readings table, bypassing the per-second check.

    Recreates databases that picked up duplicates before the store enforced
    one reading per second.
    """
    with closing(sqlite3.connect(db_path)) as conn, conn:
        conn.executemany(
            """
            INSERT INTO readings (id, timestamp_ms, value, unit, is_high, is_low, inserted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (r.id, r.epoch_ms, r.value, r.unit.value, int(r.is_high), int(r.is_low), "seed")
                for r in readings
            ],
        )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "glucolink.sqlite3"


@pytest.fixture
def store(db_path: Path) -> ReadingStore:
    return ReadingStore(db_path)
