"""Patient profile and insulin log endpoints."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException

from glucolink.dependencies import Engine, Store
from glucolink.libreview.base import InsulinShot, PatientProfile
from glucolink.models.patient import (
    InsulinShotCreate,
    InsulinShotRead,
    PatientProfileRead,
    PatientProfileUpdate,
)

router = APIRouter(tags=["patient"])


def _profile_read(profile: PatientProfile) -> PatientProfileRead:
    return PatientProfileRead(
        id=profile.id,
        name=profile.name,
        date_of_birth=profile.date_of_birth,
        age=profile.age(),
        weight=profile.weight,
        weight_unit=profile.weight_unit,
        insulin_type=profile.insulin_type,
        insulin_dose=profile.insulin_dose,
        other_medications=profile.other_medications,
    )


def _shot_read(shot: InsulinShot) -> InsulinShotRead:
    return InsulinShotRead.model_validate(shot)


# ---------- Profile ----------

@router.get("/profile", response_model=PatientProfileRead)
async def get_profile(store: Store) -> Any:
    return _profile_read(await asyncio.to_thread(store.get_profile))


@router.patch("/profile", response_model=PatientProfileRead)
async def update_profile(store: Store, body: PatientProfileUpdate) -> Any:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    profile = await asyncio.to_thread(lambda: store.update_profile(**updates))
    return _profile_read(profile)


# ---------- Insulin ----------

@router.get("/insulin", response_model=list[InsulinShotRead])
async def list_insulin_shots(
    store: Store,
    engine: Engine,
    day: date | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Any:
    """Full history newest first, or one day / a range oldest first."""
    if day is not None:
        shots = await asyncio.to_thread(store.insulin_shots_for_day, day, engine.local_tz)
    elif start is not None or end is not None:
        lower = start or datetime.fromtimestamp(0, tz=timezone.utc)
        upper = end or datetime.now(timezone.utc)
        shots = await asyncio.to_thread(store.insulin_shots_between, lower, upper)
    else:
        shots = await asyncio.to_thread(store.insulin_shots)
    return [_shot_read(s) for s in shots]


@router.post("/insulin", response_model=InsulinShotRead, status_code=201)
async def create_insulin_shot(store: Store, body: InsulinShotCreate) -> Any:
    timestamp = body.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    shot = await asyncio.to_thread(store.add_insulin_shot, timestamp, body.dosage, body.notes)
    return _shot_read(shot)


@router.delete("/insulin/{shot_id}", status_code=204)
async def delete_insulin_shot(store: Store, shot_id: str) -> None:
    if not await asyncio.to_thread(store.delete_insulin_shot, shot_id):
        raise HTTPException(status_code=404, detail="Insulin shot not found")
