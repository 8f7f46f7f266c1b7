import math

import pytest

from aerbqa.geometry import (
    alignment_checklist,
    central_beam_alignment,
    congruence,
    effective_focal_spot,
    equipment_setting,
    exposure_rate_table_top,
    high_contrast_resolution,
    imaging_phantom,
    low_contrast_resolution,
    parse_tolerance_text,
    profile_width_tolerance,
    radiation_profile_width,
    signed_alignment,
    table_position,
)
from aerbqa.values import FAIL, PASS, UNDETERMINED


@pytest.mark.parametrize("applied, tol", [(0.5, 0.5), (1.0, 0.5), (1.5, 0.75), (2.0, 1.0), (5.0, 1.0)])
def test_profile_width_tolerance_by_applied_width(applied, tol):
    assert profile_width_tolerance(applied)[1] == pytest.approx(tol)


def test_radiation_profile_width():
    doc = {"rows": [{"applied": 1.5, "measured": 2.2}, {"applied": 1.5, "measured": 2.3}]}
    res = radiation_profile_width(doc)
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.rows.loc[0, "Tolerance"] == "±0.750 mm"


def test_signed_alignment_single_value_and_one_sided():
    assert signed_alignment({"result": 1.5}).remark == PASS
    assert signed_alignment({"result": -0.5, "tolerance": {"sign": "+", "value": 2}}).remark == FAIL
    res = signed_alignment({"rows": [{"parameter": "Tilt +20", "result": 0.5}]}, unit="°")
    assert res.rows.loc[0, "Parameter"] == "Tilt +20"


def test_central_beam_alignment():
    assert central_beam_alignment({"observedTilt": 1.5}).remark == PASS
    assert central_beam_alignment({"observedTilt": 2.0}).remark == FAIL
    res = central_beam_alignment({})
    assert res.remark == UNDETERMINED
    assert res.rows.empty


def test_congruence(radiography_documents):
    res = congruence(radiography_documents["congruence"])
    assert list(res.rows["%FED"]) == ["1.50", "2.50"]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.shared_tolerance
    assert res.extras["fcd_cm"] == 100.0


def test_effective_focal_spot():
    doc = {
        "focalSpots": [
            {"focusType": "Fine", "statedWidth": 0.6, "statedHeight": 0.6, "measuredWidth": 0.8, "measuredHeight": 0.8},
            {"focusType": "Broad", "statedWidth": 1.0, "statedHeight": 1.0, "measuredWidth": 1.3, "measuredHeight": 1.3},
        ]
    }
    res = effective_focal_spot(doc)
    assert list(res.rows["Allowed (mm)"]) == ["0.90", "1.40"]
    assert res.extras["overall"] == "PASS"
    assert res.remark == PASS


def test_effective_focal_spot_pending():
    res = effective_focal_spot({"statedWidth": 1.0, "statedHeight": 1.0})
    assert res.extras["overall"] == "PENDING"
    assert res.remark == UNDETERMINED


def test_parse_tolerance_text():
    assert parse_tolerance_text("±10%") == (True, 10.0)
    assert parse_tolerance_text("0.2") == (False, 0.2)
    assert math.isnan(parse_tolerance_text("n/a")[1])


def test_high_contrast_resolution():
    doc = {"measuredLpPerMm": 1.5, "recommendedStandard": 1.6, "tolerance": "±0.2"}
    assert high_contrast_resolution(doc).remark == PASS
    doc["tolerance"] = "0.2"
    assert high_contrast_resolution(doc).remark == FAIL


@pytest.mark.parametrize("size, expected, met", [(2.0, PASS, "Yes"), (4.0, PASS, "No"), (6.0, FAIL, "No")])
def test_low_contrast_resolution(size, expected, met):
    res = low_contrast_resolution({"observedSize": size})
    assert res.remark == expected
    assert res.rows.loc[0, "Expected Level Met"] == met


def test_exposure_rate_modes():
    doc = {"rows": [{"exposure": 4.0, "mode": "AEC"}, {"exposure": 7.0, "mode": "Manual"}, {"exposure": 12.0}]}
    res = exposure_rate_table_top(doc)
    assert list(res.rows["Mode"]) == ["AEC Mode", "Manual Mode", "Manual Mode"]
    assert list(res.rows["Remark"]) == [PASS, PASS, FAIL]


def test_exposure_rate_stated_aec_mode_uses_non_aec_limit():
    res = exposure_rate_table_top({"rows": [{"exposure": 7.0, "mode": "AEC"}, {"exposure": 10.5, "mode": "AEC"}]})
    assert list(res.rows["Mode"]) == ["AEC Mode", "AEC Mode"]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.summary[0].tolerance == "≤ 10 cGy/min"


def test_congruence_reads_technique_fcd():
    doc = {
        "techniqueRows": [{"fcd": "80", "kv": "80", "mas": "10"}],
        "congruenceMeasurements": [{"dimension": "X1", "observedShift": "1.2", "edgeShift": "0.4"}],
    }
    res = congruence(doc)
    assert res.extras["fcd_cm"] == 80.0
    assert res.rows.loc[0, "%FED"] == "2.00"
    assert res.remark == PASS


def test_table_position():
    doc = {
        "initialTablePosition": "0",
        "tableIncrementation": [
            {"tablePosition": "+100", "expected": "100", "measured": "101.5"},
            {"tablePosition": "-100", "expected": "-100", "measured": "-103"},
            {"tablePosition": "", "expected": "", "measured": ""},
        ],
    }
    res = table_position(doc)
    assert list(res.rows["Deviation (mm)"]) == ["1.5", "-3.0"]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.tolerance == "±2 mm"
    assert res.shared_tolerance
    assert res.extras["initial_position"] == "0"


def test_table_position_one_sided_tolerance():
    doc = {"tableIncrementation": [{"expected": "50", "measured": "47"}], "toleranceSign": "+", "toleranceValue": "2"}
    assert table_position(doc).remark == PASS


def test_alignment_checklist():
    doc = {
        "testRows": [
            {"testName": "Lateral laser", "sign": "≤", "value": "1 mm", "measured": "0.5"},
            {"testName": "Imager centre", "sign": "≤", "value": "2 mm", "measured": "2.5"},
            {"testName": "Couch sag", "sign": "≤", "value": "1 mm"},
            {"testName": "", "sign": "≤", "value": "1"},
        ]
    }
    res = alignment_checklist(doc)
    assert list(res.rows["Test"]) == ["Lateral laser", "Imager centre", "Couch sag"]
    assert list(res.rows["Tolerance"]) == ["≤ 1 mm", "≤ 2 mm", "≤ 1 mm"]
    assert list(res.rows["Remark"]) == [PASS, FAIL, UNDETERMINED]
    assert res.remark == FAIL


def test_imaging_phantom_rows():
    doc = {
        "rows": [
            {"name": "Fibers", "visibleCount": 5, "tolerance": {"operator": ">=", "value": 5}},
            {"name": "Microcalcifications", "visibleCount": 4},
            {"name": "Masses", "visibleCount": 4},
        ]
    }
    res = imaging_phantom(doc)
    assert list(res.rows["Tolerance"]) == ["≥ 5", "≥ 5", "≥ 4"]
    assert list(res.rows["Remark"]) == [PASS, FAIL, PASS]
    assert res.remark == FAIL
    assert res.summary[1].specified == "Microcalcifications visible"


def test_imaging_phantom_grouped_record():
    res = imaging_phantom({"fibers": {"visible": 6}, "specks": {"visible": 5}, "masses": {"visible": 4}})
    assert list(res.rows["Group"]) == ["Fibers", "Microcalcifications", "Masses"]
    assert res.remark == PASS


@pytest.mark.parametrize("verified, expected, measured", [(True, PASS, "Verified"), ("no", FAIL, "Not Verified")])
def test_equipment_setting(verified, expected, measured):
    res = equipment_setting({"appliedCurrent": "100", "appliedVoltage": "28", "workload": "", "verified": verified})
    assert list(res.rows["Parameter"]) == ["Applied Current (mA)", "Applied Voltage (kV)"]
    assert res.remark == expected
    assert res.summary[0].measured == measured


def test_equipment_setting_without_verification():
    res = equipment_setting({"appliedCurrent": "100"})
    assert res.remark == UNDETERMINED
    assert res.summary == []
    assert len(res.rows) == 1
