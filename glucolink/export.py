"""Medical export: one JSON-ready document for sharing with a clinician."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from glucolink.derived_metrics import in_unit, summarize
from glucolink.libreview.base import GlucoseUnit, InsulinShot, PatientProfile, Reading, utc_now


def build_medical_export(
    profile: PatientProfile,
    readings: Sequence[Reading],
    shots: Sequence[InsulinShot],
    unit: GlucoseUnit,
    low: float,
    high: float,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the export document.

    Readings are re-expressed in ``unit`` and listed newest first; insulin
    shots oldest first.  ``low``/``high`` are in ``unit``.

    Returns:
        Dict with ``exportDate``, ``glucoseUnit``, ``patientProfile``,
        ``glucoseReadings``, ``insulinShots`` and a ``summary`` block.
    """
    exported_at = now or utc_now()
    ordered = sorted(readings, key=lambda r: r.timestamp, reverse=True)
    summary = summarize(ordered, low, high, unit)

    return {
        "exportDate": exported_at.isoformat(),
        "glucoseUnit": unit.value,
        "patientProfile": {
            "name": profile.name,
            "dateOfBirth": profile.date_of_birth.isoformat() if profile.date_of_birth else None,
            "age": profile.age(exported_at.date()),
            "weight": profile.weight,
            "weightUnit": profile.weight_unit,
            "insulinType": profile.insulin_type,
            "insulinDose": profile.insulin_dose,
            "otherMedications": profile.other_medications,
        },
        "glucoseReadings": [
            {
                "timestamp": r.timestamp.isoformat(),
                "value": round(r.value, 2),
                "unit": r.unit.value,
                "isHigh": r.is_high,
                "isLow": r.is_low,
            }
            for r in (in_unit(reading, unit) for reading in ordered)
        ],
        "insulinShots": [
            {
                "timestamp": s.timestamp.isoformat(),
                "dosage": s.dosage,
                "notes": s.notes,
            }
            for s in sorted(shots, key=lambda s: s.timestamp)
        ],
        "summary": {
            "count": summary.count,
            "mean": summary.mean,
            "percentInRange": summary.percent_in_range,
            "percentLow": summary.percent_low,
            "percentHigh": summary.percent_high,
            "gmiPercent": summary.gmi_percent,
        },
    }
