import pytest

from aerbqa.kvp_timing import (
    accuracy_of_irradiation_time,
    accuracy_of_operating_potential,
    accuracy_of_operating_potential_and_time,
    time_error_verdict,
    total_filtration,
)
from aerbqa.values import FAIL, PASS, UNDETERMINED


def _kvp_doc(readings, sign="±", value=5):
    return {"rows": [{"appliedKvp": "80", "measuredValues": readings}], "tolerance": {"sign": sign, "value": value}}


def test_percent_mode_deviation_and_pass():
    res = accuracy_of_operating_potential(_kvp_doc(["81", "83"]), percent=True)
    assert res.rows.loc[0, "Average kVp"] == "82.00"
    assert res.rows.loc[0, "Deviation (%)"] == "2.50"
    assert res.remark == PASS
    assert res.tolerance == "±5%"


def test_absolute_mode_band():
    assert accuracy_of_operating_potential(_kvp_doc([81, 83], value=2)).remark == PASS
    assert accuracy_of_operating_potential(_kvp_doc([81, 83], value=1.5)).remark == FAIL


def test_one_sided_signs():
    assert accuracy_of_operating_potential(_kvp_doc([78], sign="+", value=2)).remark == PASS
    assert accuracy_of_operating_potential(_kvp_doc([84], sign="-", value=2)).remark == PASS
    assert accuracy_of_operating_potential(_kvp_doc([84], sign="+", value=2)).remark == FAIL


@pytest.mark.parametrize("value", [0, -1])
def test_non_positive_tolerance_is_undetermined(value):
    res = accuracy_of_operating_potential(_kvp_doc([80], value=value))
    assert res.extras["tolerance_value"] == float(value)
    assert res.remark == UNDETERMINED


def test_stored_average_used_without_readings():
    doc = {"rows": [{"appliedKvp": 100, "avgKvp": "103"}], "tolerance": {"value": 5}}
    res = accuracy_of_operating_potential(doc)
    assert res.rows.loc[0, "Average kVp"] == "103.00"
    assert res.remark == PASS


def test_stored_remark_wins_in_summary_only():
    doc = _kvp_doc([81, 83], value=1)
    doc["rows"][0]["remark"] = "PASS"
    res = accuracy_of_operating_potential(doc)
    assert res.rows.loc[0, "Remark"] == FAIL
    assert res.summary[0].remarks == PASS


def test_kvp_and_time(bmd_documents):
    res = accuracy_of_operating_potential_and_time(bmd_documents["accuracyOfOperatingPotentialAndTime"])
    assert list(res.rows["Average kVp"]) == ["70.0", "100.0"]
    assert res.rows.loc[0, "Average Time (s)"] == "0.105"
    assert res.rows.loc[0, "Time Error (%)"] == "5.00"
    assert res.remark == PASS
    assert len(res.summary) == 2


def test_kvp_and_time_fails_on_time():
    doc = {"rows": [{"appliedKvp": 70, "setTime": 0.1, "measuredValues": [{"kvp": 70, "time": 0.13}]}]}
    assert accuracy_of_operating_potential_and_time(doc).remark == FAIL


def test_kvp_and_time_needs_set_values():
    doc = {"rows": [{"appliedKvp": 70, "measuredValues": [{"kvp": 70, "time": 0.1}]}]}
    res = accuracy_of_operating_potential_and_time(doc)
    assert res.rows.loc[0, "Remark"] == UNDETERMINED


def _bmd_row(applied, kvps, set_time, times):
    return {
        "rows": [
            {
                "appliedKvp": applied,
                "setTime": set_time,
                "measuredValues": [{"kvp": k, "time": t} for k, t in zip(kvps, times)],
            }
        ],
        "kvpTolerance": {"sign": "±", "value": 5},
        "timeTolerance": {"sign": "±", "value": 10},
    }


def test_kvp_part_uses_percent_deviation():
    # 60 -> 64 kV is 4 kV (inside ±5 kV) but 6.67 %
    doc = _bmd_row(60, [64, 64], 0.1, [0.1, 0.1])
    assert accuracy_of_operating_potential_and_time(doc).remark == PASS

    res = accuracy_of_operating_potential_and_time(doc, part="kvp", kvp_percent=True)
    assert res.remark == FAIL
    assert res.tolerance == "±5%"
    assert res.rows.loc[0, "Deviation (%)"] == "6.67"
    assert "Set Time (s)" not in res.rows.columns
    assert res.summary[0].specified == "60.0 kV"


def test_time_part_judged_on_its_own():
    doc = _bmd_row(60, [64, 64], 0.1, [0.1, 0.1])
    res = accuracy_of_operating_potential_and_time(doc, part="time")
    assert res.remark == PASS
    assert "Applied kVp" not in res.rows.columns
    assert res.summary[0].measured == "0.100"

    doc = _bmd_row(60, [60, 60], 0.1, [0.12, 0.12])
    assert accuracy_of_operating_potential_and_time(doc, part="time").remark == FAIL
    assert accuracy_of_operating_potential_and_time(doc, part="kvp", kvp_percent=True).remark == PASS


def test_unknown_part_rejected():
    with pytest.raises(ValueError, match="unknown part"):
        accuracy_of_operating_potential_and_time({"rows": []}, part="dose")


@pytest.mark.parametrize(
    "err, op, tol, expected",
    [(5, "<=", 10, True), (12, "<=", 10, False), (12, ">", 10, False), (5, ">", 10, True), (None, "<=", 10, None)],
)
def test_time_error_verdict(err, op, tol, expected):
    assert time_error_verdict(err, op, tol) is expected


def test_irradiation_time():
    doc = {
        "irradiationTimes": [{"setTime": 100, "measuredTime": 105}, {"setTime": 200, "measuredTime": 230}],
        "testConditions": {"fcd": 100, "kv": 70, "ma": 100},
    }
    res = accuracy_of_irradiation_time(doc)
    assert list(res.rows["Error (%)"]) == ["5.00", "15.00"]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.remark == FAIL
    assert res.extras["kv"] == 70.0


def test_total_filtration_bands():
    assert total_filtration({"totalFiltration": {"measured": 2.6, "atKvp": 80}}).remark == PASS
    res = total_filtration({"totalFiltration": {"measured": 2.3, "atKvp": 110}})
    assert res.remark == FAIL
    assert res.extras["required_mm_al"] == 2.5


def test_total_filtration_without_data():
    res = total_filtration({"rows": []})
    assert res.rows.empty
    assert res.summary == []
