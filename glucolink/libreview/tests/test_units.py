"""Tests for glucose unit codes and mg/dL <-> mmol/L conversion."""

from __future__ import annotations

import pytest

from glucolink.libreview.base import MGDL_PER_MMOL, GlucoseUnit, Reading, convert
from glucolink.libreview.tests.conftest import FIXED_NOW


class TestConvert:
    def test_mmol_round_trip(self) -> None:
        mg_dl = convert(5.6, GlucoseUnit.MMOL_L, GlucoseUnit.MG_DL)
        assert mg_dl == pytest.approx(5.6 * MGDL_PER_MMOL)
        assert convert(mg_dl, GlucoseUnit.MG_DL, GlucoseUnit.MMOL_L) == pytest.approx(5.6)

    def test_mg_dl_round_trip(self) -> None:
        mmol = convert(180, GlucoseUnit.MG_DL, GlucoseUnit.MMOL_L)
        assert mmol == pytest.approx(9.99, abs=0.01)
        assert convert(mmol, GlucoseUnit.MMOL_L, GlucoseUnit.MG_DL) == pytest.approx(180)

    def test_same_unit_is_identity(self) -> None:
        assert convert(7.2, GlucoseUnit.MMOL_L, GlucoseUnit.MMOL_L) == 7.2

    def test_reading_properties(self) -> None:
        reading = Reading(id="r", timestamp=FIXED_NOW, value=5.6, unit=GlucoseUnit.MMOL_L)
        assert reading.mmol_l == 5.6
        assert reading.mg_dl == pytest.approx(100.9, abs=0.01)
        assert reading.value_in(GlucoseUnit.MG_DL) == reading.mg_dl


class TestUnitCodes:
    @pytest.mark.parametrize("code, expected", [
        (0, GlucoseUnit.MMOL_L),
        (1, GlucoseUnit.MG_DL),
        ("1", GlucoseUnit.MG_DL),
        (2, None),
        (None, None),
        (True, None),
    ])
    def test_from_code(self, code: object, expected: GlucoseUnit | None) -> None:
        assert GlucoseUnit.from_code(code) == expected
