"""Canonical data models shared by the LibreView client, store and sync engine.

Every reading that leaves the upstream client is a ``Reading``: an immutable
value with a timezone-aware UTC timestamp.  The timestamp (to the second) is
the identity used for deduplication; the ``id`` is informational only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum

logger = logging.getLogger("glucolink.libreview")

# mg/dL per mmol/L
MGDL_PER_MMOL = 18.0182

SYNTHETIC_ID_PREFIX = "avg-"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------


class GlucoseUnit(str, Enum):
    """Glucose concentration unit."""

    MMOL_L = "mmol/L"
    MG_DL = "mg/dL"

    @classmethod
    def from_code(cls, code: object) -> GlucoseUnit | None:
        """Map the upstream ``GlucoseUnits`` integer code to a unit.

        ``0`` is mmol/L and ``1`` is mg/dL.  Anything else returns None so
        the caller can apply its default.
        """
        if isinstance(code, bool):
            return None
        try:
            numeric = int(code)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        return {0: cls.MMOL_L, 1: cls.MG_DL}.get(numeric)


def convert(value: float, from_unit: GlucoseUnit, to_unit: GlucoseUnit) -> float:
    """Convert a glucose value between units.

    Args:
        value:     Concentration in ``from_unit``.
        from_unit: Source unit.
        to_unit:   Target unit.

    Returns:
        The value expressed in ``to_unit``.
    """
    if from_unit == to_unit:
        return value
    if to_unit == GlucoseUnit.MG_DL:
        return value * MGDL_PER_MMOL
    return value / MGDL_PER_MMOL


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reading:
    """One glucose observation.

    Attributes:
        id:        Upstream id, generated UUID, or ``avg-...`` for bucket averages.
        timestamp: Timezone-aware UTC time of the observation.
        value:     Non-negative concentration in ``unit``.
        unit:      Unit of ``value``.
        is_high:   Device flagged the value as high.
        is_low:    Device flagged the value as low.
    """

    id: str
    timestamp: datetime
    value: float
    unit: GlucoseUnit
    is_high: bool = False
    is_low: bool = False

    @property
    def mg_dl(self) -> float:
        return convert(self.value, self.unit, GlucoseUnit.MG_DL)

    @property
    def mmol_l(self) -> float:
        return convert(self.value, self.unit, GlucoseUnit.MMOL_L)

    @property
    def is_synthetic(self) -> bool:
        return self.id.startswith(SYNTHETIC_ID_PREFIX)

    @property
    def epoch_ms(self) -> int:
        """Millisecond epoch timestamp, as persisted."""
        return round(self.timestamp.timestamp() * 1000)

    @property
    def epoch_second(self) -> int:
        """Whole-second epoch timestamp, the identity used for deduplication."""
        return self.epoch_ms // 1000

    def value_in(self, unit: GlucoseUnit) -> float:
        return convert(self.value, self.unit, unit)

    def shifted(self, seconds: float) -> Reading:
        """Return a copy moved forward by ``seconds``."""
        return replace(self, timestamp=self.timestamp + timedelta(seconds=seconds))


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthTicket:
    """Token returned by a successful LibreView login.

    Attributes:
        token:      Bearer token.
        expires_at: Server-declared expiry (informational, may be None).
        duration:   Server-declared lifetime in milliseconds, if sent.
    """

    token: str
    expires_at: datetime | None = None
    duration: int | None = None


@dataclass(frozen=True)
class AuthSession:
    """Cached bearer token owned by the TokenManager.

    ``expires_at`` is always ``issued_at`` plus the client-side lifetime;
    ``server_expires_at`` is kept for logging only.
    """

    token: str
    issued_at: datetime
    expires_at: datetime
    server_expires_at: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


# ---------------------------------------------------------------------------
# Patient profile and insulin
# ---------------------------------------------------------------------------


@dataclass
class PatientProfile:
    """The single local patient profile.

    Attributes:
        id:                Stable profile id (UUID string).
        name:              Display name.
        date_of_birth:     Used to derive ``age``.
        weight:            Body weight in ``weight_unit``.
        weight_unit:       ``kg`` or ``lb``.
        insulin_type:      Free text (e.g. "Lantus").
        insulin_dose:      Free text (e.g. "12u nightly").
        other_medications: Free text.
    """

    id: str
    name: str | None = None
    date_of_birth: date | None = None
    weight: float | None = None
    weight_unit: str = "kg"
    insulin_type: str | None = None
    insulin_dose: str | None = None
    other_medications: str | None = None

    def age(self, today: date | None = None) -> int | None:
        """Whole years since ``date_of_birth``, or None if unknown."""
        if self.date_of_birth is None:
            return None
        today = today or date.today()
        years = today.year - self.date_of_birth.year
        if (today.month, today.day) < (self.date_of_birth.month, self.date_of_birth.day):
            years -= 1
        return years


@dataclass(frozen=True)
class InsulinShot:
    """A logged insulin injection.

    Empty notes are normalised to None at construction.
    """

    id: str
    timestamp: datetime
    dosage: float | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.notes is not None and not self.notes.strip():
            object.__setattr__(self, "notes", None)
