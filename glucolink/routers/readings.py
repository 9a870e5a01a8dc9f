"""Reading endpoints: history view, refresh, status, maintenance and statistics."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from glucolink.dependencies import AppSettings, Engine, Poller, Store
from glucolink.derived_metrics import daily_time_in_range, hourly_percentile_bands, summarize
from glucolink.models.glucose import (
    DedupeRead,
    DuplicateDiagnosisRead,
    HistoryRead,
    HourlyBandRead,
    ReadingRead,
    RefreshResultRead,
    SummaryRead,
    SyncStatusRead,
)
from glucolink.sync.scheduler import RefreshBackoffError

router = APIRouter(prefix="/readings", tags=["readings"])
logger = logging.getLogger("glucolink.routers.readings")


def _aware(value: datetime | None) -> datetime | None:
    """Query datetimes without an offset are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------- History ----------

@router.get("", response_model=HistoryRead)
async def list_readings(
    engine: Engine,
    store: Store,
    start: datetime | None = None,
    end: datetime | None = None,
    granularity: int | None = Query(default=None, ge=0, le=1440),
    limit: int | None = Query(default=None, ge=1),
) -> Any:
    if start is None and end is None and granularity is None:
        view = engine.history
    else:
        lower = _aware(start) or datetime.fromtimestamp(0, tz=timezone.utc)
        upper = _aware(end) or datetime.now(timezone.utc)
        if lower > upper:
            raise HTTPException(status_code=400, detail="start must not be after end")
        readings = await asyncio.to_thread(store.fetch_range, lower, upper)
        view = engine.build_history(readings, granularity)

    items = view.readings[:limit] if limit else view.readings
    return HistoryRead(
        granularity_minutes=view.granularity_minutes,
        display_unit=view.display_unit,
        count=len(items),
        readings=[ReadingRead.from_annotated(a) for a in items],
    )


@router.get("/current", response_model=ReadingRead)
async def current_reading(engine: Engine) -> Any:
    current = engine.history.current
    if current is None:
        raise HTTPException(status_code=404, detail="No readings stored")
    return ReadingRead.from_annotated(current)


@router.delete("", status_code=204)
async def delete_all_readings(engine: Engine) -> None:
    if not await engine.clear_all_data():
        raise HTTPException(status_code=500, detail="Could not delete readings")


# ---------- Refresh ----------

@router.post("/refresh", response_model=RefreshResultRead)
async def refresh(poller: Poller) -> Any:
    try:
        result = await poller.trigger()
    except RefreshBackoffError as exc:
        logger.info("Manual refresh rejected, backing off until %s", exc.retry_at.isoformat())
        retry_after = max(int((exc.retry_at - datetime.now(timezone.utc)).total_seconds()), 1)
        raise HTTPException(
            status_code=429,
            detail=f"LibreView is throttling requests, retry after {exc.retry_at.isoformat()}",
            headers={"Retry-After": str(retry_after)},
        ) from exc
    return RefreshResultRead.from_result(result)


@router.get("/status", response_model=SyncStatusRead)
async def sync_status(engine: Engine, poller: Poller, store: Store) -> Any:
    return SyncStatusRead(
        state=engine.state,
        last_result=RefreshResultRead.from_result(engine.last_result),
        retry_not_before=engine.retry_not_before,
        last_poll_at=poller.last_poll_at,
        poll_interval_seconds=int(poller.interval.total_seconds()),
        stored_readings=await asyncio.to_thread(store.count),
    )


# ---------- Maintenance ----------

@router.get("/duplicates", response_model=DuplicateDiagnosisRead)
async def diagnose_duplicates(store: Store) -> Any:
    diagnosis = await asyncio.to_thread(store.find_duplicates)
    return DuplicateDiagnosisRead(
        total_readings=diagnosis.total_readings,
        unique_timestamps=diagnosis.unique_timestamps,
        duplicate_groups=diagnosis.duplicate_groups,
        duplicate_rows=diagnosis.duplicate_rows,
        examples=[
            (datetime.fromtimestamp(second, tz=timezone.utc), n)
            for second, n in diagnosis.examples
        ],
    )


@router.post("/dedupe", response_model=DedupeRead)
async def dedupe(engine: Engine, settings: AppSettings) -> Any:
    cleanup = await engine.cleanup_duplicates(settings.resolved_backup_dir)
    return DedupeRead(
        survivor_count=cleanup.report.survivor_count,
        removed_count=cleanup.report.removed_count,
        backup_path=str(cleanup.backup_path),
    )


# ---------- Statistics ----------

@router.get("/stats", response_model=SummaryRead)
async def reading_statistics(
    engine: Engine,
    store: Store,
    days: int = Query(default=14, ge=1, le=365),
) -> Any:
    end = datetime.now(timezone.utc)
    readings = await asyncio.to_thread(store.fetch_range, end - timedelta(days=days), end)
    config = engine.config
    unit = config.display.unit
    low, high = config.thresholds.low, config.thresholds.high
    return SummaryRead.from_summary(
        summarize(readings, low, high, unit),
        daily_time_in_range(readings, low, high, unit, engine.local_tz),
    )


@router.get("/agp", response_model=list[HourlyBandRead])
async def ambulatory_profile(
    engine: Engine,
    store: Store,
    days: int = Query(default=14, ge=1, le=90),
) -> Any:
    end = datetime.now(timezone.utc)
    readings = await asyncio.to_thread(store.fetch_range, end - timedelta(days=days), end)
    bands = hourly_percentile_bands(readings, engine.config.display.unit, engine.local_tz)
    return [HourlyBandRead.from_band(b) for b in bands]
