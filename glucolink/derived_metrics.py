"""Derived glucose metrics: range status, trend, time-bucket averaging, statistics.

Every function here is pure: same input, same output, whatever order the
readings arrive in.  Nothing touches the store or the network.

Trend rule:
    Among prior readings taken 0..30 minutes before the current one, the most
    recent is compared in mg/dL.  A rate below 0.5 mg/dL/min in magnitude is
    Stable, otherwise Rising or Falling.  With no qualifying prior the device
    flags decide (high → Rising, low → Falling, else Stable).  Zero elapsed
    time is NotComputable.
"""

from __future__ import annotations

import hashlib
import statistics
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Iterable, Sequence

from glucolink.libreview.base import SYNTHETIC_ID_PREFIX, GlucoseUnit, Reading, convert

DEFAULT_LOOKBACK = timedelta(minutes=30)
DEFAULT_STABLE_RATE = 0.5  # mg/dL per minute

# Glucose management indicator: GMI(%) = 3.31 + 0.02392 × mean mg/dL
_GMI_INTERCEPT = 3.31
_GMI_SLOPE = 0.02392

AGP_PERCENTILES = (5, 25, 50, 75, 95)


class RangeStatus(str, Enum):
    LOW = "low"
    IN_RANGE = "in_range"
    HIGH = "high"


class Trend(str, Enum):
    NOT_COMPUTABLE = "not_computable"
    FALLING = "falling"
    STABLE = "stable"
    RISING = "rising"


# ---------------------------------------------------------------------------
# Range and trend
# ---------------------------------------------------------------------------


def range_status(value: float, low: float, high: float) -> RangeStatus:
    """Classify a value against thresholds expressed in the same unit.

    Both bounds are inclusive to InRange.
    """
    if value < low:
        return RangeStatus.LOW
    if value > high:
        return RangeStatus.HIGH
    return RangeStatus.IN_RANGE


def flag_trend(reading: Reading) -> Trend:
    """Trend from device flags alone, used without historical context."""
    if reading.is_high:
        return Trend.RISING
    if reading.is_low:
        return Trend.FALLING
    return Trend.STABLE


def trend(
    current: Reading,
    priors: Iterable[Reading],
    lookback: timedelta = DEFAULT_LOOKBACK,
    stable_rate: float = DEFAULT_STABLE_RATE,
) -> Trend:
    """Rate-of-change trend of ``current`` against earlier readings.

    Args:
        current:     Reading being annotated.
        priors:      Candidate earlier readings, any order.
        lookback:    Only priors at most this old are considered.
        stable_rate: Magnitude (mg/dL per minute) below which the trend is Stable.

    Returns:
        The Trend; flag-based when no prior falls inside the lookback.
    """
    recent = [
        p for p in priors
        if timedelta(0) <= current.timestamp - p.timestamp <= lookback
    ]
    if not recent:
        return flag_trend(current)

    previous = max(recent, key=lambda p: p.timestamp)
    elapsed_minutes = (current.timestamp - previous.timestamp).total_seconds() / 60.0
    if elapsed_minutes <= 0:
        return Trend.NOT_COMPUTABLE

    rate = (current.mg_dl - previous.mg_dl) / elapsed_minutes
    if abs(rate) < stable_rate:
        return Trend.STABLE
    if rate >= stable_rate:
        return Trend.RISING
    return Trend.FALLING


# ---------------------------------------------------------------------------
# Time-bucket averaging
# ---------------------------------------------------------------------------


def _bucket_key(reading: Reading, minutes: int, tz: tzinfo) -> str:
    local = reading.timestamp.astimezone(tz)
    floored = (local.minute // minutes) * minutes
    # offset keeps the two passes through a repeated DST hour apart
    return "%04d-%02d-%02d %02d:%02d%s" % (
        local.year, local.month, local.day, local.hour, floored, local.strftime("%z"),
    )


def _average(key: str, members: list[Reading]) -> Reading:
    unit = members[0].unit
    count = len(members)
    digest = hashlib.sha1("|".join(sorted(r.id for r in members)).encode()).hexdigest()[:12]
    return Reading(
        id=f"{SYNTHETIC_ID_PREFIX}{key}-{digest}",
        timestamp=members[count // 2].timestamp,
        value=statistics.fmean(r.value_in(unit) for r in members),
        unit=unit,
        is_high=sum(r.is_high for r in members) > count / 2,
        is_low=sum(r.is_low for r in members) > count / 2,
    )


def granularity_bucket(
    readings: Sequence[Reading], minutes: int, tz: tzinfo = timezone.utc
) -> list[Reading]:
    """Average readings into fixed-width time buckets.

    Buckets are keyed by local ``(year, month, day, hour, minute // g * g)``
    plus the UTC offset, so the hour repeated when DST ends yields two buckets.
    A single-member bucket passes through untouched; larger buckets become one
    synthetic reading with the mean value (in the earliest member's unit), the
    median-by-time timestamp, majority flags and an ``avg-`` id derived from
    the member ids.

    Args:
        readings: Readings in any order.
        minutes:  Bucket width ``g``; 0 disables bucketing.
        tz:       Zone whose wall clock defines bucket boundaries.

    Returns:
        Bucketed readings, newest first.  The input list unchanged when
        ``minutes`` is 0 or there is at most one reading.
    """
    if minutes <= 0 or len(readings) <= 1:
        return list(readings)

    ordered = sorted(readings, key=lambda r: (r.timestamp, r.id))
    buckets: dict[str, list[Reading]] = defaultdict(list)
    for reading in ordered:
        buckets[_bucket_key(reading, minutes, tz)].append(reading)

    result = [
        members[0] if len(members) == 1 else _average(key, members)
        for key, members in buckets.items()
    ]
    return sorted(result, key=lambda r: (r.timestamp, r.id), reverse=True)


# ---------------------------------------------------------------------------
# History view annotation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnnotatedReading:
    """A reading as shown in the history view."""

    reading: Reading
    display_value: float
    display_unit: GlucoseUnit
    trend: Trend
    range_status: RangeStatus


def annotate(
    readings: Sequence[Reading],
    low: float,
    high: float,
    display_unit: GlucoseUnit = GlucoseUnit.MG_DL,
    lookback: timedelta = DEFAULT_LOOKBACK,
    stable_rate: float = DEFAULT_STABLE_RATE,
) -> list[AnnotatedReading]:
    """Attach trend and range status to every reading, newest first.

    The closest earlier reading is the only prior that can qualify for the
    trend, so each reading is compared with its immediate predecessor.
    """
    ordered = sorted(readings, key=lambda r: (r.timestamp, r.id), reverse=True)
    annotated: list[AnnotatedReading] = []
    for index, reading in enumerate(ordered):
        value = reading.value_in(display_unit)
        annotated.append(
            AnnotatedReading(
                reading=reading,
                display_value=value,
                display_unit=display_unit,
                trend=trend(reading, ordered[index + 1:index + 2], lookback, stable_rate),
                range_status=range_status(value, low, high),
            )
        )
    return annotated


# ---------------------------------------------------------------------------
# Descriptive statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GlucoseSummary:
    """Elementary statistics over a set of readings, in ``unit``.

    Percentages are 0-100.  ``gmi_percent`` is the glucose management
    indicator estimated from the mean.
    """

    count: int
    unit: GlucoseUnit
    mean: float | None = None
    std_dev: float | None = None
    coefficient_of_variation: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    percent_low: float = 0.0
    percent_in_range: float = 0.0
    percent_high: float = 0.0
    gmi_percent: float | None = None
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None


def summarize(
    readings: Sequence[Reading],
    low: float,
    high: float,
    unit: GlucoseUnit = GlucoseUnit.MG_DL,
) -> GlucoseSummary:
    """Compute count, mean, spread, range split and GMI for a set of readings."""
    if not readings:
        return GlucoseSummary(count=0, unit=unit)

    values = [r.value_in(unit) for r in readings]
    count = len(values)
    mean = statistics.fmean(values)
    std_dev = statistics.stdev(values) if count > 1 else 0.0
    statuses = [range_status(v, low, high) for v in values]
    mean_mg_dl = convert(mean, unit, GlucoseUnit.MG_DL)
    timestamps = [r.timestamp for r in readings]

    return GlucoseSummary(
        count=count,
        unit=unit,
        mean=mean,
        std_dev=std_dev,
        coefficient_of_variation=(std_dev / mean * 100.0) if mean else None,
        minimum=min(values),
        maximum=max(values),
        percent_low=statuses.count(RangeStatus.LOW) / count * 100.0,
        percent_in_range=statuses.count(RangeStatus.IN_RANGE) / count * 100.0,
        percent_high=statuses.count(RangeStatus.HIGH) / count * 100.0,
        gmi_percent=_GMI_INTERCEPT + _GMI_SLOPE * mean_mg_dl,
        first_timestamp=min(timestamps),
        last_timestamp=max(timestamps),
    )


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Linear-interpolated percentile of an ascending, non-empty sequence."""
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * pct / 100.0
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    fraction = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


@dataclass(frozen=True)
class HourlyBand:
    """AGP band for one hour of the day: percentile → value."""

    hour: int
    count: int
    percentiles: dict[int, float]


def hourly_percentile_bands(
    readings: Iterable[Reading],
    unit: GlucoseUnit = GlucoseUnit.MG_DL,
    tz: tzinfo = timezone.utc,
    percentiles: Sequence[int] = AGP_PERCENTILES,
) -> list[HourlyBand]:
    """Ambulatory glucose profile: percentile bands per local hour of day.

    Hours without readings are omitted.
    """
    by_hour: dict[int, list[float]] = defaultdict(list)
    for reading in readings:
        by_hour[reading.timestamp.astimezone(tz).hour].append(reading.value_in(unit))

    bands = []
    for hour in sorted(by_hour):
        values = sorted(by_hour[hour])
        bands.append(
            HourlyBand(
                hour=hour,
                count=len(values),
                percentiles={p: percentile(values, p) for p in percentiles},
            )
        )
    return bands


@dataclass(frozen=True)
class DailyRange:
    """Time-in-range split for one local calendar day."""

    day: date
    count: int
    mean: float
    percent_low: float
    percent_in_range: float
    percent_high: float


def daily_time_in_range(
    readings: Iterable[Reading],
    low: float,
    high: float,
    unit: GlucoseUnit = GlucoseUnit.MG_DL,
    tz: tzinfo = timezone.utc,
) -> list[DailyRange]:
    """Per-day time-in-range, oldest day first."""
    by_day: dict[date, list[Reading]] = defaultdict(list)
    for reading in readings:
        by_day[reading.timestamp.astimezone(tz).date()].append(reading)

    days = []
    for day in sorted(by_day):
        summary = summarize(by_day[day], low, high, unit)
        days.append(
            DailyRange(
                day=day,
                count=summary.count,
                mean=summary.mean or 0.0,
                percent_low=summary.percent_low,
                percent_in_range=summary.percent_in_range,
                percent_high=summary.percent_high,
            )
        )
    return days


def in_unit(reading: Reading, unit: GlucoseUnit) -> Reading:
    """Return ``reading`` re-expressed in ``unit``."""
    if reading.unit == unit:
        return reading
    return replace(reading, value=reading.value_in(unit), unit=unit)
