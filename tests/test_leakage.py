import pytest

from aerbqa.leakage import (
    lead_apron,
    leakage_in_one_hour_mr,
    max_radiation_level,
    radiation_protection_survey,
    to_mr_per_hr,
    tube_housing_leakage,
    weekly_dose_mr,
)
from aerbqa.modalities import get_modality
from aerbqa.values import FAIL, PASS, UNDETERMINED


def test_unit_conversion():
    assert to_mr_per_hr(1, "mGy/hr") == 114.0
    assert to_mr_per_hr(2, "mR/hr") == 2.0


def test_leakage_in_one_hour():
    assert leakage_in_one_hour_mr(180, 60, 3) == pytest.approx(60.0)


def test_tube_housing_leakage_pass(bmd_documents):
    res = tube_housing_leakage(bmd_documents["tubeHousingLeakage"])
    assert res.rows.loc[0, "Max"] == "60.00"
    assert res.rows.loc[0, "Leakage (mGy in 1 h)"] == "0.5263"
    assert res.remark == PASS
    assert res.extras["max_location"] == "Tube"


def test_tube_housing_leakage_fail():
    doc = {"settings": {"ma": 3}, "workload": 180, "leakageRows": [{"location": "Collimator", "right": 150}]}
    res = tube_housing_leakage(doc)
    assert res.extras["max_leakage_mgy"] == pytest.approx(1.3158)
    assert res.remark == FAIL


def test_tube_housing_leakage_fixed_current():
    doc = {"workload": 1000, "leakageRows": [{"location": "Tube", "left": 6}]}
    res = tube_housing_leakage(doc, fixed_ma=100.0)
    assert res.extras["ma"] == 100.0
    assert res.rows.loc[0, "Leakage (mR in 1 h)"] == "1.000"


def test_weekly_dose_defaults_current_to_one():
    assert weekly_dose_mr(100, 6, None) == 10.0
    assert weekly_dose_mr(100, 6, 0) == 10.0


def test_protection_survey(bmd_documents):
    res = radiation_protection_survey(bmd_documents["radiationProtectionSurvey"])
    assert list(res.rows["mR/week"]) == ["0.167", "0.042"]
    assert list(res.rows["Category"]) == ["Worker", "Public"]
    assert res.remark == PASS


def test_protection_survey_public_limit_and_zero():
    doc = {
        "workload": 500,
        "appliedCurrent": 100,
        "locations": [
            {"location": "Waiting area", "mRPerHr": 30, "category": "public"},
            {"location": "Store", "mRPerHr": 0, "category": "public"},
        ],
    }
    res = radiation_protection_survey(doc)
    assert list(res.rows["Remark"]) == [FAIL, UNDETERMINED]
    assert res.remark == FAIL


def test_max_radiation_level(bmd_documents):
    res = max_radiation_level(bmd_documents["maxRadiationLevel"])
    assert list(res.rows["Category"]) == ["Worker", "Worker", "Public"]
    assert res.extras["max_worker_mr_week"] == pytest.approx(0.083)
    assert [e.specified for e in res.summary] == ["Maximum (worker)", "Maximum (public)"]
    assert res.remark == PASS


def test_max_radiation_level_judges_each_reading_per_hour():
    # 0.4 mR/h is 1.667 mR/week (inside 2 mR/week) but above 0.2 mR/h
    res = max_radiation_level({"readings": [{"mRPerHr": 1.5}, {"mRPerHr": 0}, {"mRPerHr": 0.4}]})
    assert list(res.rows["Remark"]) == [PASS, UNDETERMINED, FAIL]
    assert res.rows.loc[2, "mR/week"] == "1.667"
    assert res.rows.loc[2, "Limit (mR/h)"] == "≤ 0.2"
    assert res.remark == FAIL
    # the summary still reports weekly maxima
    assert res.summary[1].measured == "1.667 mR/week"
    assert res.summary[1].remarks == PASS


def test_dental_hand_held_leakage_uses_100_ma():
    doc = {"settings": {"ma": 2}, "workload": 1000, "leakageRows": [{"location": "Tube", "front": 60}]}
    spec = next(t for t in get_modality("Dental Hand-held").tests if t.key == "tubeHousingLeakage")
    res = spec.run(doc)
    assert res.rows.loc[0, "Leakage (mR in 1 h)"] == "10.000"
    assert res.remark == PASS

    # measured current is used where no fixed current applies
    assert tube_housing_leakage(doc).rows.loc[0, "Leakage (mR in 1 h)"] == "500.000"


def test_lead_apron():
    res = lead_apron({"neutral": 100, "positions": [0.5, 0.5, 0.5]})
    assert res.extras["reduction_pct"] == 99.5
    assert res.rows.loc[0, "Result"] == "Pass, Can use further"
    assert res.remark == PASS

    res = lead_apron({"neutral": 100, "position1": 2, "position2": 2, "position3": 2})
    assert res.remark == FAIL
