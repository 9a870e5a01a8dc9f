"""Pydantic schemas for readings, refresh status and statistics."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from glucolink.derived_metrics import (
    AnnotatedReading,
    DailyRange,
    GlucoseSummary,
    HourlyBand,
    RangeStatus,
    Trend,
)
from glucolink.libreview.base import GlucoseUnit
from glucolink.libreview.errors import ErrorKind
from glucolink.models.base import GlucolinkBase
from glucolink.sync.engine import EngineState, RefreshOutcome, RefreshResult


class ReadingRead(GlucolinkBase):
    id: str
    timestamp: datetime
    value: float
    unit: GlucoseUnit
    display_value: float
    display_unit: GlucoseUnit
    is_high: bool
    is_low: bool
    is_synthetic: bool
    trend: Trend
    range_status: RangeStatus

    @classmethod
    def from_annotated(cls, item: AnnotatedReading) -> ReadingRead:
        r = item.reading
        return cls(
            id=r.id,
            timestamp=r.timestamp,
            value=r.value,
            unit=r.unit,
            display_value=round(item.display_value, 2),
            display_unit=item.display_unit,
            is_high=r.is_high,
            is_low=r.is_low,
            is_synthetic=r.is_synthetic,
            trend=item.trend,
            range_status=item.range_status,
        )


class HistoryRead(GlucolinkBase):
    granularity_minutes: int
    display_unit: GlucoseUnit
    count: int
    readings: list[ReadingRead]


class RefreshResultRead(GlucolinkBase):
    outcome: RefreshOutcome
    count: int = 0
    error_kind: ErrorKind | None = None
    message: str
    finished_at: datetime | None = None

    @classmethod
    def from_result(cls, result: RefreshResult) -> RefreshResultRead:
        return cls(
            outcome=result.outcome,
            count=result.count,
            error_kind=result.error_kind,
            message=result.message,
            finished_at=result.finished_at,
        )


class SyncStatusRead(GlucolinkBase):
    state: EngineState
    last_result: RefreshResultRead
    retry_not_before: datetime | None = None
    last_poll_at: datetime | None = None
    poll_interval_seconds: int
    stored_readings: int


class DedupeRead(GlucolinkBase):
    survivor_count: int
    removed_count: int
    backup_path: str


class DuplicateDiagnosisRead(GlucolinkBase):
    total_readings: int
    unique_timestamps: int
    duplicate_groups: int
    duplicate_rows: int
    examples: list[tuple[datetime, int]] = Field(default_factory=list)


class DailyRangeRead(GlucolinkBase):
    day: date
    count: int
    mean: float
    percent_low: float
    percent_in_range: float
    percent_high: float


class SummaryRead(GlucolinkBase):
    count: int
    unit: GlucoseUnit
    mean: float | None = None
    std_dev: float | None = None
    coefficient_of_variation: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    percent_low: float
    percent_in_range: float
    percent_high: float
    gmi_percent: float | None = None
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None
    daily: list[DailyRangeRead] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary: GlucoseSummary, daily: list[DailyRange]) -> SummaryRead:
        return cls(
            **{k: getattr(summary, k) for k in (
                "count", "unit", "mean", "std_dev", "coefficient_of_variation",
                "minimum", "maximum", "percent_low", "percent_in_range",
                "percent_high", "gmi_percent", "first_timestamp", "last_timestamp",
            )},
            daily=[DailyRangeRead.model_validate(d) for d in daily],
        )


class HourlyBandRead(GlucolinkBase):
    hour: int
    count: int
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float

    @classmethod
    def from_band(cls, band: HourlyBand) -> HourlyBandRead:
        p = band.percentiles
        return cls(
            hour=band.hour, count=band.count,
            p5=p[5], p25=p[25], p50=p[50], p75=p[75], p95=p[95],
        )
