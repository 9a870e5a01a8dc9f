"""SQLite persistence for glucose readings, the patient profile and insulin shots.

Readings are keyed by timestamp for deduplication.  Every write runs inside one
``BEGIN IMMEDIATE`` transaction under a process-wide write lock, and the
database runs in WAL mode, so a reader sees the state before or after a write,
never a half-applied one.  Each operation opens and closes its own connection.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import closing, contextmanager
from dataclasses import fields, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Iterable, Iterator

from glucolink.libreview.base import GlucoseUnit, InsulinShot, PatientProfile, Reading, utc_now
from glucolink.sync.dedup import DedupeReport, DuplicateDiagnosis

logger = logging.getLogger("glucolink.store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS readings (
    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    value REAL NOT NULL,
    unit TEXT NOT NULL,
    is_high INTEGER NOT NULL DEFAULT 0,
    is_low INTEGER NOT NULL DEFAULT 0,
    inserted_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_readings_timestamp
ON readings(timestamp_ms);

CREATE TABLE IF NOT EXISTS patient_profile (
    id TEXT PRIMARY KEY,
    name TEXT,
    date_of_birth TEXT,
    weight REAL,
    weight_unit TEXT NOT NULL DEFAULT 'kg',
    insulin_type TEXT,
    insulin_dose TEXT,
    other_medications TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS insulin_shots (
    id TEXT PRIMARY KEY,
    timestamp_ms INTEGER NOT NULL,
    dosage REAL,
    notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_insulin_shots_timestamp
ON insulin_shots(timestamp_ms);
"""

_PROFILE_FIELDS = tuple(f.name for f in fields(PatientProfile) if f.name != "id")

# A process may hold several ReadingStore objects for one file; they share a lock
_write_locks: dict[Path, threading.RLock] = {}
_write_locks_guard = threading.Lock()


def _write_lock_for(path: Path) -> threading.RLock:
    with _write_locks_guard:
        return _write_locks.setdefault(path, threading.RLock())


def _to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return round(ts.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _row_to_reading(row: sqlite3.Row) -> Reading:
    return Reading(
        id=row["id"],
        timestamp=_from_ms(row["timestamp_ms"]),
        value=row["value"],
        unit=GlucoseUnit(row["unit"]),
        is_high=bool(row["is_high"]),
        is_low=bool(row["is_low"]),
    )


def _row_to_shot(row: sqlite3.Row) -> InsulinShot:
    return InsulinShot(
        id=row["id"],
        timestamp=_from_ms(row["timestamp_ms"]),
        dosage=row["dosage"],
        notes=row["notes"],
    )


def _row_to_profile(row: sqlite3.Row) -> PatientProfile:
    dob = row["date_of_birth"]
    return PatientProfile(
        id=row["id"],
        name=row["name"],
        date_of_birth=date.fromisoformat(dob) if dob else None,
        weight=row["weight"],
        weight_unit=row["weight_unit"] or "kg",
        insulin_type=row["insulin_type"],
        insulin_dose=row["insulin_dose"],
        other_medications=row["other_medications"],
    )


class ReadingStore:
    """SQLite repository for everything Glucolink persists."""

    def __init__(self, db_path: Path, self_heal: bool = True) -> None:
        """Create the store, ensure the schema exists and repair duplicates.

        Args:
            db_path:   SQLite file; parent directories are created.
            self_heal: Run one dedupe pass on open.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = _write_lock_for(self._db_path.resolve())
        self._init_schema()
        if self_heal:
            report = self.dedupe()
            if report.removed_count:
                logger.warning(
                    "Self-healing pass removed %d duplicate reading(s) from %s",
                    report.removed_count, self._db_path,
                )

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            yield conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; rolls back on any exception."""
        with self._write_lock, closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self._write_lock, closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def fetch_all(self) -> list[Reading]:
        """All stored readings, newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM readings ORDER BY timestamp_ms DESC, row_id ASC"
            ).fetchall()
        return [_row_to_reading(r) for r in rows]

    def fetch_range(self, start: datetime, end: datetime) -> list[Reading]:
        """Readings with ``start <= timestamp <= end``, newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM readings
                WHERE timestamp_ms BETWEEN ? AND ?
                ORDER BY timestamp_ms DESC, row_id ASC
                """,
                (_to_ms(start), _to_ms(end)),
            ).fetchall()
        return [_row_to_reading(r) for r in rows]

    def latest(self) -> Reading | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM readings ORDER BY timestamp_ms DESC, row_id ASC LIMIT 1"
            ).fetchone()
        return _row_to_reading(row) if row else None

    def count(self) -> int:
        with self._reader() as conn:
            return conn.execute("SELECT COUNT(*) FROM readings").fetchone()[0]

    def timestamp_keys(self) -> set[int]:
        """Whole epoch seconds held by stored readings."""
        with self._reader() as conn:
            return {row[0] for row in conn.execute("SELECT DISTINCT timestamp_ms / 1000 FROM readings")}

    def insert_new(self, readings: Iterable[Reading]) -> int:
        """Insert readings whose timestamp second is not stored yet.

        The id plays no part: a reading is skipped when its second is already
        held, by a stored row or by an earlier reading of the same batch.

        Args:
            readings: Readings to persist, inserted in the given order.

        Returns:
            Number of rows written.
        """
        batch = list(readings)
        if not batch:
            return 0

        inserted_at = utc_now().isoformat()
        inserted = 0
        with self._transaction() as conn:
            occupied = {
                row[0] for row in conn.execute("SELECT DISTINCT timestamp_ms / 1000 FROM readings")
            }
            for reading in batch:
                if reading.epoch_second in occupied:
                    continue
                conn.execute(
                    """
                    INSERT INTO readings (id, timestamp_ms, value, unit, is_high, is_low, inserted_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        reading.id,
                        reading.epoch_ms,
                        reading.value,
                        reading.unit.value,
                        int(reading.is_high),
                        int(reading.is_low),
                        inserted_at,
                    ),
                )
                occupied.add(reading.epoch_second)
                inserted += 1

        logger.info("Stored %d new reading(s) (%d offered)", inserted, len(batch))
        return inserted

    def delete_all(self) -> bool:
        """Delete every stored reading.  Profile and insulin log are kept."""
        try:
            with self._transaction() as conn:
                removed = conn.execute("DELETE FROM readings").rowcount
        except sqlite3.Error:
            logger.exception("Failed to delete readings from %s", self._db_path)
            return False
        logger.info("Deleted %d reading(s)", removed)
        return True

    def dedupe(self) -> DedupeReport:
        """Keep one reading per timestamp second, the first one stored.

        Runs in a single transaction; a second call is a no-op.
        """
        with self._transaction() as conn:
            removed = conn.execute(
                """
                DELETE FROM readings
                WHERE row_id NOT IN (
                    SELECT MIN(row_id) FROM readings
                    GROUP BY timestamp_ms / 1000
                )
                """
            ).rowcount
            survivors = conn.execute("SELECT COUNT(*) FROM readings").fetchone()[0]

        if removed:
            logger.info("Dedupe removed %d reading(s), %d remain", removed, survivors)
        return DedupeReport(survivor_count=survivors, removed_count=removed)

    def find_duplicates(self, example_limit: int = 10) -> DuplicateDiagnosis:
        """Describe duplicate timestamp seconds without changing anything."""
        with self._reader() as conn:
            total = conn.execute("SELECT COUNT(*) FROM readings").fetchone()[0]
            groups = conn.execute(
                """
                SELECT timestamp_ms / 1000 AS second, COUNT(*) AS n
                FROM readings
                GROUP BY second
                HAVING n > 1
                ORDER BY n DESC, second ASC
                """
            ).fetchall()
            unique = conn.execute(
                "SELECT COUNT(DISTINCT timestamp_ms / 1000) FROM readings"
            ).fetchone()[0]

        return DuplicateDiagnosis(
            total_readings=total,
            unique_timestamps=unique,
            duplicate_groups=len(groups),
            duplicate_rows=sum(row["n"] - 1 for row in groups),
            examples=[(row["second"], row["n"]) for row in groups[:example_limit]],
        )

    def backup(self, dest_dir: Path) -> Path:
        """Copy the live database to ``dest_dir`` using SQLite's online backup.

        Returns:
            Path of the backup file.
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%d-%H%M%S-%f")
        target = dest_dir / f"{self._db_path.stem}-backup-{stamp}.sqlite3"
        with self._write_lock, closing(self._connect()) as src, closing(sqlite3.connect(target)) as dst:
            src.backup(dst)
        logger.info("Backed up %s to %s", self._db_path, target)
        return target

    # ------------------------------------------------------------------
    # Patient profile
    # ------------------------------------------------------------------

    def get_profile(self) -> PatientProfile:
        """Return the patient profile, creating the default one on first access."""
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM patient_profile LIMIT 1").fetchone()
        if row:
            return _row_to_profile(row)

        with self._transaction() as conn:
            # Re-check under the write lock
            row = conn.execute("SELECT * FROM patient_profile LIMIT 1").fetchone()
            if row:
                return _row_to_profile(row)
            profile = PatientProfile(id=str(uuid.uuid4()))
            self._upsert_profile(conn, profile)
        logger.info("Created default patient profile %s", profile.id)
        return profile

    def save_profile(self, profile: PatientProfile) -> PatientProfile:
        """Insert or replace the profile row keyed by ``profile.id``."""
        with self._transaction() as conn:
            self._upsert_profile(conn, profile)
        return profile

    def update_profile(self, **changes: Any) -> PatientProfile:
        """Apply a partial update; fields not named keep their values.

        Raises:
            ValueError: If a change names an unknown profile field.
        """
        unknown = set(changes) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile field(s): {', '.join(sorted(unknown))}")
        updated = replace(self.get_profile(), **changes)
        return self.save_profile(updated)

    @staticmethod
    def _upsert_profile(conn: sqlite3.Connection, profile: PatientProfile) -> None:
        conn.execute(
            """
            INSERT INTO patient_profile (
                id, name, date_of_birth, weight, weight_unit,
                insulin_type, insulin_dose, other_medications, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                date_of_birth = excluded.date_of_birth,
                weight = excluded.weight,
                weight_unit = excluded.weight_unit,
                insulin_type = excluded.insulin_type,
                insulin_dose = excluded.insulin_dose,
                other_medications = excluded.other_medications,
                updated_at = excluded.updated_at
            """,
            (
                profile.id,
                profile.name,
                profile.date_of_birth.isoformat() if profile.date_of_birth else None,
                profile.weight,
                profile.weight_unit or "kg",
                profile.insulin_type,
                profile.insulin_dose,
                profile.other_medications,
                utc_now().isoformat(),
            ),
        )

    # ------------------------------------------------------------------
    # Insulin shots
    # ------------------------------------------------------------------

    def add_insulin_shot(
        self,
        timestamp: datetime,
        dosage: float | None = None,
        notes: str | None = None,
    ) -> InsulinShot:
        shot = InsulinShot(id=str(uuid.uuid4()), timestamp=timestamp, dosage=dosage, notes=notes)
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO insulin_shots (id, timestamp_ms, dosage, notes) VALUES (?, ?, ?, ?)",
                (shot.id, _to_ms(shot.timestamp), shot.dosage, shot.notes),
            )
        logger.info("Logged insulin shot %s", shot.id)
        return _as_stored(shot)

    def delete_insulin_shot(self, shot_id: str) -> bool:
        with self._transaction() as conn:
            deleted = conn.execute("DELETE FROM insulin_shots WHERE id = ?", (shot_id,)).rowcount
        return deleted > 0

    def insulin_shots(self) -> list[InsulinShot]:
        """Full insulin history, newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM insulin_shots ORDER BY timestamp_ms DESC"
            ).fetchall()
        return [_row_to_shot(r) for r in rows]

    def insulin_shots_between(self, start: datetime, end: datetime) -> list[InsulinShot]:
        """Shots with ``start <= timestamp <= end``, oldest first."""
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM insulin_shots
                WHERE timestamp_ms BETWEEN ? AND ?
                ORDER BY timestamp_ms ASC
                """,
                (_to_ms(start), _to_ms(end)),
            ).fetchall()
        return [_row_to_shot(r) for r in rows]

    def insulin_shots_for_day(self, day: date, tz: tzinfo = timezone.utc) -> list[InsulinShot]:
        """Shots within the local calendar day ``[00:00, next 00:00)``, oldest first."""
        start = datetime.combine(day, time.min, tzinfo=tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM insulin_shots
                WHERE timestamp_ms >= ? AND timestamp_ms < ?
                ORDER BY timestamp_ms ASC
                """,
                (_to_ms(start), _to_ms(end)),
            ).fetchall()
        return [_row_to_shot(r) for r in rows]


def _as_stored(shot: InsulinShot) -> InsulinShot:
    """Normalise a new shot the way a stored row reads back (UTC, ms precision)."""
    return replace(shot, timestamp=_from_ms(_to_ms(shot.timestamp)))
