"""Tests for range status, trend, bucket averaging and descriptive statistics."""

from __future__ import annotations

import random
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from glucolink.derived_metrics import (
    RangeStatus,
    Trend,
    annotate,
    daily_time_in_range,
    granularity_bucket,
    hourly_percentile_bands,
    percentile,
    range_status,
    summarize,
    trend,
)
from glucolink.libreview.base import MGDL_PER_MMOL, GlucoseUnit, Reading
from glucolink.tests.conftest import T0, make_reading


class TestRangeStatus:
    @pytest.mark.parametrize("value, expected", [
        (69.9, RangeStatus.LOW),
        (70, RangeStatus.IN_RANGE),
        (120, RangeStatus.IN_RANGE),
        (180, RangeStatus.IN_RANGE),
        (180.1, RangeStatus.HIGH),
    ])
    def test_bounds_inclusive(self, value: float, expected: RangeStatus) -> None:
        assert range_status(value, 70, 180) == expected


class TestTrend:
    def test_rising(self) -> None:
        # +10 mg/dL over 5 minutes = 2 mg/dL/min
        assert trend(make_reading("b", 5, 120), [make_reading("a", 0, 110)]) == Trend.RISING

    def test_falling(self) -> None:
        assert trend(make_reading("b", 5, 100), [make_reading("a", 0, 110)]) == Trend.FALLING

    def test_stable_below_half_per_minute(self) -> None:
        # +2 mg/dL over 5 minutes = 0.4 mg/dL/min
        assert trend(make_reading("b", 5, 112), [make_reading("a", 0, 110)]) == Trend.STABLE

    def test_exact_threshold_is_rising(self) -> None:
        assert trend(make_reading("b", 4, 112), [make_reading("a", 0, 110)]) == Trend.RISING

    def test_rate_computed_in_mg_dl(self) -> None:
        current = make_reading("b", 5, 7.0, GlucoseUnit.MMOL_L)
        prior = make_reading("a", 0, 6.9, GlucoseUnit.MMOL_L)
        # 0.1 mmol/L ≈ 1.8 mg/dL over 5 minutes ≈ 0.36 mg/dL/min
        assert trend(current, [prior]) == Trend.STABLE

    def test_most_recent_prior_wins(self) -> None:
        current = make_reading("c", 20, 150)
        priors = [make_reading("a", 0, 50), make_reading("b", 15, 150)]
        assert trend(current, priors) == Trend.STABLE

    def test_prior_outside_lookback_ignored(self) -> None:
        current = make_reading("b", 31, 200)
        assert trend(current, [make_reading("a", 0, 100)]) == Trend.STABLE

    @pytest.mark.parametrize("flags, expected", [
        ({"is_high": True}, Trend.RISING),
        ({"is_low": True}, Trend.FALLING),
        ({}, Trend.STABLE),
    ])
    def test_flags_without_prior(self, flags: dict, expected: Trend) -> None:
        assert trend(make_reading("a", 0, 100, **flags), []) == expected

    def test_zero_elapsed_not_computable(self) -> None:
        assert trend(make_reading("b", 0, 120), [make_reading("a", 0, 100)]) == Trend.NOT_COMPUTABLE

    def test_future_priors_ignored(self) -> None:
        assert trend(make_reading("a", 0, 100), [make_reading("b", 5, 300)]) == Trend.STABLE


class TestGranularityBucket:
    def test_zero_is_identity(self) -> None:
        readings = [make_reading("a", 0), make_reading("b", 1)]
        assert granularity_bucket(readings, 0) == readings

    def test_single_reading_is_identity(self) -> None:
        readings = [make_reading("a", 0)]
        assert granularity_bucket(readings, 15) == readings

    def test_mean_median_timestamp_and_majority_flags(self) -> None:
        readings = [
            make_reading("a", 0, 190, is_high=True),
            make_reading("b", 4, 200, is_high=True),
            make_reading("c", 8, 150),
        ]
        [bucket] = granularity_bucket(readings, 15)
        assert bucket.value == pytest.approx(180)
        assert bucket.timestamp == T0 + timedelta(minutes=4)
        assert bucket.is_high is True
        assert bucket.is_low is False
        assert bucket.is_synthetic

    def test_even_sized_bucket_takes_upper_median(self) -> None:
        readings = [make_reading(str(m), m) for m in (0, 3, 6, 9)]
        [bucket] = granularity_bucket(readings, 15)
        assert bucket.timestamp == T0 + timedelta(minutes=6)

    def test_tie_is_not_majority(self) -> None:
        readings = [make_reading("a", 0, is_low=True), make_reading("b", 5)]
        [bucket] = granularity_bucket(readings, 15)
        assert bucket.is_low is False

    def test_single_member_bucket_passes_through(self) -> None:
        readings = [make_reading("a", 0), make_reading("b", 5), make_reading("c", 20)]
        result = granularity_bucket(readings, 15)
        assert result[0] == readings[2]
        assert result[1].is_synthetic

    def test_newest_first(self) -> None:
        readings = [make_reading(str(m), m) for m in range(0, 120, 5)]
        result = granularity_bucket(readings, 30)
        assert len(result) == 4
        timestamps = [r.timestamp for r in result]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_order_independent(self) -> None:
        readings = [make_reading(str(m), m, 100 + m) for m in range(0, 60, 5)]
        shuffled = readings[:]
        random.Random(7).shuffle(shuffled)
        assert granularity_bucket(shuffled, 15) == granularity_bucket(readings, 15)

    def test_mixed_units_use_earliest_member_unit(self) -> None:
        readings = [
            make_reading("a", 0, 5.0, GlucoseUnit.MMOL_L),
            make_reading("b", 5, 5.0 * MGDL_PER_MMOL, GlucoseUnit.MG_DL),
        ]
        [bucket] = granularity_bucket(readings, 15)
        assert bucket.unit == GlucoseUnit.MMOL_L
        assert bucket.value == pytest.approx(5.0)

    def test_bucket_boundaries_follow_local_clock(self) -> None:
        # Kolkata is UTC+05:30, so 08:20 and 08:40 UTC are 13:50 and 14:10 local
        readings = [make_reading("a", 20), make_reading("b", 40)]
        assert len(granularity_bucket(readings, 60)) == 1
        assert len(granularity_bucket(readings, 60, ZoneInfo("Asia/Kolkata"))) == 2

    def test_repeated_dst_hour_forms_two_buckets(self) -> None:
        # New York leaves DST at 06:00 UTC on 2026-11-01: 05:20 and 06:20 UTC are both 01:20 local
        first = Reading(
            id="edt", timestamp=datetime(2026, 11, 1, 5, 20, tzinfo=timezone.utc), value=100, unit=GlucoseUnit.MG_DL
        )
        second = replace(first, id="est", timestamp=first.timestamp + timedelta(hours=1))
        result = granularity_bucket([first, second], 60, ZoneInfo("America/New_York"))
        assert result == [second, first]


class TestAnnotate:
    def test_newest_first_with_predecessor_trend(self) -> None:
        readings = [make_reading("a", 0, 100), make_reading("c", 10, 200), make_reading("b", 5, 110)]
        annotated = annotate(readings, 70, 180)
        assert [a.reading.id for a in annotated] == ["c", "b", "a"]
        assert [a.trend for a in annotated] == [Trend.RISING, Trend.RISING, Trend.STABLE]
        assert annotated[0].range_status == RangeStatus.HIGH

    def test_display_unit_conversion(self) -> None:
        [item] = annotate([make_reading("a", 0, 180)], 3.9, 10.0, GlucoseUnit.MMOL_L)
        assert item.display_value == pytest.approx(180 / MGDL_PER_MMOL)
        assert item.display_unit == GlucoseUnit.MMOL_L
        assert item.range_status == RangeStatus.IN_RANGE


class TestStatistics:
    def test_summary(self) -> None:
        readings = [make_reading("a", 0, 60), make_reading("b", 5, 120), make_reading("c", 10, 200)]
        summary = summarize(readings, 70, 180)
        assert summary.count == 3
        assert summary.mean == pytest.approx(380 / 3)
        assert summary.minimum == 60
        assert summary.maximum == 200
        assert summary.percent_low == pytest.approx(100 / 3)
        assert summary.percent_in_range == pytest.approx(100 / 3)
        assert summary.percent_high == pytest.approx(100 / 3)
        assert summary.gmi_percent == pytest.approx(3.31 + 0.02392 * 380 / 3)
        assert summary.first_timestamp == T0
        assert summary.last_timestamp == T0 + timedelta(minutes=10)

    def test_summary_empty(self) -> None:
        summary = summarize([], 70, 180)
        assert summary.count == 0
        assert summary.mean is None

    def test_single_reading_has_zero_spread(self) -> None:
        summary = summarize([make_reading("a", 0, 100)], 70, 180)
        assert summary.std_dev == 0.0
        assert summary.coefficient_of_variation == 0.0

    def test_percentile_interpolates(self) -> None:
        assert percentile([10, 20, 30, 40], 50) == pytest.approx(25)
        assert percentile([10, 20, 30, 40], 0) == 10
        assert percentile([10, 20, 30, 40], 100) == 40

    def test_percentile_of_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            percentile([], 50)

    def test_hourly_bands(self) -> None:
        readings = [make_reading(str(m), m, 100 + m) for m in range(0, 60, 10)]
        readings.append(make_reading("late", 120, 250))
        bands = hourly_percentile_bands(readings)
        assert [b.hour for b in bands] == [8, 10]
        assert bands[0].count == 6
        assert bands[0].percentiles[50] == pytest.approx(125)
        assert bands[1].percentiles[95] == 250

    def test_daily_time_in_range(self) -> None:
        readings = [
            make_reading("a", 0, 60),
            make_reading("b", 5, 120),
            make_reading("c", 24 * 60, 200),
        ]
        days = daily_time_in_range(readings, 70, 180)
        assert [d.day for d in days] == [date(2026, 2, 23), date(2026, 2, 24)]
        assert days[0].percent_low == 50
        assert days[1].percent_high == 100
