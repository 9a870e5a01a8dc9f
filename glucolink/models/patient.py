"""Pydantic schemas for the patient profile, insulin log and credentials."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from glucolink.models.base import GlucolinkBase


class PatientProfileRead(GlucolinkBase):
    id: str
    name: str | None = None
    date_of_birth: date | None = None
    age: int | None = None
    weight: float | None = None
    weight_unit: str = "kg"
    insulin_type: str | None = None
    insulin_dose: str | None = None
    other_medications: str | None = None


class PatientProfileUpdate(GlucolinkBase):
    name: str | None = None
    date_of_birth: date | None = None
    weight: float | None = Field(default=None, ge=0)
    weight_unit: str | None = Field(default=None, pattern="^(kg|lb)$")
    insulin_type: str | None = None
    insulin_dose: str | None = None
    other_medications: str | None = None


class InsulinShotCreate(GlucolinkBase):
    timestamp: datetime
    dosage: float | None = Field(default=None, ge=0)
    notes: str | None = None


class InsulinShotRead(GlucolinkBase):
    id: str
    timestamp: datetime
    dosage: float | None = None
    notes: str | None = None


class CredentialsUpdate(GlucolinkBase):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class CredentialCheckRead(GlucolinkBase):
    success: bool
    message: str
