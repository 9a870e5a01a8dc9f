"""Decode LibreView graph payloads into canonical ``Reading`` objects.

The graph endpoint has been observed returning several shapes, so decoding is
a tagged pipeline.  Each stage either returns a ``DecodeResult`` or None and
never mutates shared state:

    1. strict      — whole envelope validated by pydantic; any bad entry fails
                     the stage
    2. mapping     — ``data.graphData`` walked as plain dicts; bad entries are
                     skipped and counted
    3. best_effort — reading-like entries located in alternative shapes
                     (top-level ``graphData``, ``data`` as a list, the single
                     ``connection.glucoseMeasurement``)

The first stage that yields a result wins.  Its readings then get in-batch
collision nudging and a descending sort.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from glucolink.libreview.base import (
    AuthTicket,
    GlucoseUnit,
    Reading,
    convert,
    utc_now,
)
from glucolink.sync.dedup import nudge_collisions

logger = logging.getLogger("glucolink.libreview.parsing")

# Tried in order after ISO-8601; naive results are localised by the caller's tz
TIMESTAMP_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y %I:%M:%S %p",   # 3/25/2025 10:47:08 PM (LibreLinkUp default)
    "%m/%d/%Y %I:%M %p",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
)

DEFAULT_UNIT = GlucoseUnit.MMOL_L


class EntryDecodeError(ValueError):
    """A single graph entry could not be turned into a Reading."""


class EnvelopeDecodeError(ValueError):
    """No decode stage could locate reading entries in the payload."""


class DecodeStage(str, Enum):
    STRICT = "strict"
    MAPPING = "mapping"
    BEST_EFFORT = "best_effort"


@dataclass(frozen=True)
class DecodeResult:
    """Readings produced by one decode stage.

    Attributes:
        stage:    Stage that produced the result.
        readings: Finalised batch (collisions nudged, newest first).
        skipped:  Entries dropped as malformed.
        degraded: Entries whose timestamp fell back to "now".
    """

    stage: DecodeStage
    readings: list[Reading] = field(default_factory=list)
    skipped: int = 0
    degraded: int = 0


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def _looks_numeric(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _epoch_ms_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _to_utc(dt: datetime, local_tz: tzinfo) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=local_tz)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: object, local_tz: tzinfo = timezone.utc) -> datetime | None:
    """Parse an upstream timestamp into an aware UTC datetime.

    Accepted, in order: a native ``datetime``; a numeric epoch-milliseconds
    value; ISO-8601 with or without fractional seconds and offset; the
    ``TIMESTAMP_FORMATS``; an epoch-milliseconds string.

    Args:
        value:    Raw field value.
        local_tz: Zone applied to naive results.

    Returns:
        UTC datetime, or None if nothing matched.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_utc(value, local_tz)
    if isinstance(value, (int, float)):
        try:
            return _epoch_ms_to_datetime(float(value))
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if not _looks_numeric(text):
        try:
            return _to_utc(datetime.fromisoformat(text.replace("Z", "+00:00")), local_tz)
        except ValueError:
            pass

        for fmt in TIMESTAMP_FORMATS:
            try:
                return _to_utc(datetime.strptime(text, fmt), local_tz)
            except ValueError:
                continue
        return None

    try:
        return _epoch_ms_to_datetime(float(text))
    except (OverflowError, OSError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Single entries
# ---------------------------------------------------------------------------


def _field(entry: Mapping[str, Any], name: str) -> Any:
    """Case-insensitive field lookup; exact match wins."""
    if name in entry:
        return entry[name]
    lowered = name.lower()
    for key, value in entry.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _flag(value: object) -> bool:
    """Flags arrive as booleans or as integer 1/0."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true"}
    return False


def parse_entry(
    entry: Mapping[str, Any],
    local_tz: tzinfo = timezone.utc,
    now: Callable[[], datetime] = utc_now,
) -> tuple[Reading, bool]:
    """Turn one graph entry into a Reading.

    Args:
        entry:    Raw entry mapping.
        local_tz: Zone for naive ``Timestamp`` values.
        now:      Clock used when no timestamp can be parsed.

    Returns:
        ``(reading, degraded)`` where ``degraded`` marks a timestamp fallback.

    Raises:
        EntryDecodeError: If the entry carries no usable value.
    """
    if not isinstance(entry, Mapping):
        raise EntryDecodeError(f"entry is {type(entry).__name__}, not a mapping")

    unit_code = _field(entry, "GlucoseUnits")
    unit = GlucoseUnit.from_code(unit_code)
    if unit is None:
        if unit_code is not None:
            logger.warning("Unrecognised GlucoseUnits code %r, assuming %s", unit_code, DEFAULT_UNIT.value)
        unit = DEFAULT_UNIT

    value = _safe_float(_field(entry, "Value"))
    if value is None:
        mg_dl = _safe_float(_field(entry, "ValueInMgPerDl"))
        if mg_dl is None:
            raise EntryDecodeError("entry has neither Value nor ValueInMgPerDl")
        value = convert(mg_dl, GlucoseUnit.MG_DL, unit)
    if value < 0:
        raise EntryDecodeError(f"negative glucose value {value}")

    degraded = False
    timestamp = parse_timestamp(_field(entry, "Timestamp"), local_tz)
    if timestamp is None:
        # FactoryTimestamp is reported in UTC
        timestamp = parse_timestamp(_field(entry, "FactoryTimestamp"), timezone.utc)
    if timestamp is None:
        degraded = True
        timestamp = now()
        logger.warning(
            "Could not parse timestamp %r, using current time",
            _field(entry, "Timestamp"),
        )

    raw_id = _field(entry, "id")
    reading_id = str(raw_id) if raw_id not in (None, "") else str(uuid.uuid4())

    reading = Reading(
        id=reading_id,
        timestamp=timestamp,
        value=value,
        unit=unit,
        is_high=_flag(_field(entry, "isHigh")),
        is_low=_flag(_field(entry, "isLow")),
    )
    return reading, degraded


def _decode_entries(
    entries: list[Any],
    stage: DecodeStage,
    local_tz: tzinfo,
    now: Callable[[], datetime],
    strict: bool = False,
) -> DecodeResult | None:
    readings: list[Reading] = []
    skipped = 0
    degraded = 0
    for index, entry in enumerate(entries):
        try:
            reading, fallback = parse_entry(entry, local_tz, now)
        except EntryDecodeError as exc:
            if strict:
                logger.debug("Strict decode rejected entry %d: %s", index, exc)
                return None
            logger.warning("Skipping malformed graph entry %d: %s", index, exc)
            skipped += 1
            continue
        readings.append(reading)
        degraded += int(fallback)

    return DecodeResult(
        stage=stage,
        readings=finalize_batch(readings),
        skipped=skipped,
        degraded=degraded,
    )


def finalize_batch(readings: list[Reading]) -> list[Reading]:
    """Resolve in-batch collisions, then sort newest first."""
    return sorted(nudge_collisions(readings), key=lambda r: r.timestamp, reverse=True)


# ---------------------------------------------------------------------------
# Stage 1: strict schema
# ---------------------------------------------------------------------------


class _StrictGraphEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Value: float
    GlucoseUnits: int
    Timestamp: str
    isHigh: bool
    isLow: bool
    ValueInMgPerDl: float | None = None
    FactoryTimestamp: str | None = None


class _StrictGraphData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    graphData: list[_StrictGraphEntry]


class _StrictGraphEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: _StrictGraphData


def _decode_strict(payload: Any, local_tz: tzinfo, now: Callable[[], datetime]) -> DecodeResult | None:
    try:
        _StrictGraphEnvelope.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Strict graph decode failed: %d error(s)", exc.error_count())
        return None
    return _decode_entries(payload["data"]["graphData"], DecodeStage.STRICT, local_tz, now, strict=True)


# ---------------------------------------------------------------------------
# Stage 2: semi-structured mapping
# ---------------------------------------------------------------------------


def _decode_mapping(payload: Any, local_tz: tzinfo, now: Callable[[], datetime]) -> DecodeResult | None:
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return None
    entries = data.get("graphData")
    if not isinstance(entries, list):
        return None
    return _decode_entries(entries, DecodeStage.MAPPING, local_tz, now)


# ---------------------------------------------------------------------------
# Stage 3: best-effort extraction
# ---------------------------------------------------------------------------


def _candidate_entries(payload: Any) -> list[Any] | None:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping):
        return None

    top_level = _field(payload, "graphData")
    if isinstance(top_level, list):
        return top_level

    data = payload.get("data")
    if isinstance(data, list):
        return data
    if not isinstance(data, Mapping):
        return None

    graph = _field(data, "graphData")
    if isinstance(graph, list):
        return graph

    connection = data.get("connection")
    if isinstance(connection, Mapping):
        latest = _field(connection, "glucoseMeasurement") or _field(connection, "glucoseItem")
        if isinstance(latest, Mapping):
            return [latest]
    latest = _field(data, "glucoseMeasurement")
    if isinstance(latest, Mapping):
        return [latest]
    return None


def _decode_best_effort(payload: Any, local_tz: tzinfo, now: Callable[[], datetime]) -> DecodeResult | None:
    entries = _candidate_entries(payload)
    if entries is None:
        return None
    return _decode_entries(entries, DecodeStage.BEST_EFFORT, local_tz, now)


_STAGES = (_decode_strict, _decode_mapping, _decode_best_effort)


def decode_graph_payload(
    payload: Any,
    local_tz: tzinfo = timezone.utc,
    now: Callable[[], datetime] = utc_now,
) -> DecodeResult:
    """Run the decode pipeline over a graph response body.

    Args:
        payload:  Parsed JSON body.
        local_tz: Zone for naive timestamps.
        now:      Clock for timestamp fallback.

    Returns:
        The first successful stage's DecodeResult.

    Raises:
        EnvelopeDecodeError: If no stage could find reading entries.
    """
    for stage in _STAGES:
        result = stage(payload, local_tz, now)
        if result is None:
            continue
        if result.stage is not DecodeStage.STRICT:
            logger.warning(
                "Graph payload decoded by %s stage (%d readings, %d skipped)",
                result.stage.value, len(result.readings), result.skipped,
            )
        return result
    raise EnvelopeDecodeError("graph payload contains no recognisable reading entries")


# ---------------------------------------------------------------------------
# Auth and connections
# ---------------------------------------------------------------------------


class _AuthTicketModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    expires: int | None = None
    duration: int | None = None


class _LoginData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    authTicket: _AuthTicketModel


class _LoginEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: _LoginData


def parse_auth_ticket(payload: Any) -> AuthTicket:
    """Extract the auth ticket from a login response body.

    Raises:
        ValueError: If the body does not carry ``data.authTicket.token``.
    """
    try:
        ticket = _LoginEnvelope.model_validate(payload).data.authTicket
    except ValidationError as exc:
        raise ValueError(f"login response has no auth ticket: {exc.error_count()} error(s)") from exc
    if not ticket.token:
        raise ValueError("login response carries an empty token")

    expires_at = None
    if ticket.expires:
        # seconds since epoch; informational only
        try:
            expires_at = datetime.fromtimestamp(ticket.expires, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Ignoring unusable auth ticket expiry %r", ticket.expires)
    return AuthTicket(token=ticket.token, expires_at=expires_at, duration=ticket.duration)


def parse_connections(payload: Any) -> list[str]:
    """Return patient ids from a connections response body, in listed order."""
    if not isinstance(payload, Mapping):
        raise ValueError("connections response is not an object")
    data = payload.get("data")
    if not isinstance(data, list):
        raise ValueError("connections response has no data list")
    ids: list[str] = []
    for connection in data:
        if isinstance(connection, Mapping) and connection.get("patientId"):
            ids.append(str(connection["patientId"]))
    return ids
