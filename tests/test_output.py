import math

import pytest

from aerbqa.output import ctdi, linearity, reproducibility_of_output, weighted_ctdi
from aerbqa.values import FAIL, PASS


def test_reproducibility_percent(bmd_documents):
    res = reproducibility_of_output(bmd_documents["reproducibilityOfRadiationOutput"])
    assert res.remark == PASS
    assert res.tolerance == "≤ 5%"
    assert res.shared_tolerance
    assert res.extras["labels"] == ["80 kV, 20 mAs"]
    assert "CoV (%)" in res.rows.columns


def test_reproducibility_fails_on_spread():
    doc = {"outputRows": [{"kv": 70, "outputs": [10, 12]}]}
    res = reproducibility_of_output(doc)
    # mean 11, population std 1 -> 9.09 %
    assert res.rows.loc[0, "CoV (%)"] == "9.09"
    assert res.remark == FAIL


def test_reproducibility_fraction_mode():
    doc = {"outputRows": [{"kv": 70, "outputs": [10, 12]}]}
    res = reproducibility_of_output(doc, percent=False)
    assert res.rows.loc[0, "CoV"] == "0.0909"
    assert res.tolerance == "≤ 0.05"
    assert res.remark == FAIL


def test_reproducibility_stored_cov():
    doc = {"outputRows": [{"kv": 70, "mas": 10, "cv": "3.1"}]}
    assert reproducibility_of_output(doc).remark == PASS


def test_linearity_mas_pass(radiography_documents):
    res = linearity(radiography_documents["linearityOfMasLoading"])
    assert res.extras["x"] == [0.1, 0.1]
    assert res.extras["col"] == 0.0
    assert res.remark == PASS
    assert len(res.summary) == 1


def test_linearity_mas_fail_and_ranges():
    doc = {
        "table2": [
            {"mAsApplied": "5-15", "outputs": [1.0]},
            {"mAsApplied": "20", "outputs": [3.0]},
        ]
    }
    res = linearity(doc)
    # X = 0.1 and 0.15 -> CoL = 0.05 / 0.25
    assert res.extras["col"] == pytest.approx(0.2)
    assert res.remark == FAIL


def test_linearity_ma_uses_condition_time(bmd_documents):
    res = linearity(bmd_documents["linearityOfMaLoading"], loading="mA")
    assert res.extras["x"] == [0.5, 0.5]
    assert res.remark == PASS


def test_linearity_cell_check_flags_station():
    doc = {
        "table1": {"time": 1.0},
        "table2": [
            {"ma": 100, "outputs": [50, 50, 50]},
            {"ma": 200, "outputs": [90, 90, 120]},
        ],
    }
    res = linearity(doc, loading="mA", check_cells=True)
    assert list(res.rows["Readings > 10%"]) == [0, 1]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.remark == FAIL


def test_linearity_time_loading():
    doc = {"table2": [{"time": 0.1, "outputs": [1.0]}, {"time": 0.2, "outputs": [2.0]}]}
    assert linearity(doc, loading="time").remark == PASS


def test_linearity_rejects_unknown_loading():
    with pytest.raises(ValueError, match="linearity"):
        linearity({}, loading="kV")


def test_weighted_ctdi():
    assert weighted_ctdi(10, [20, 20, 20, 20]) == pytest.approx(16.67)
    assert math.isnan(weighted_ctdi(None, [1, 2]))


def test_ctdi_against_quoted():
    doc = {
        "head": {"center": 10, "peripheral": [20, 20, 20, 20], "quoted": 16},
        "body": {"center": 5, "top": 10, "bottom": 10, "left": 10, "right": 10, "quoted": 5},
    }
    res = ctdi(doc)
    assert list(res.rows["Phantom"]) == ["Head", "Body"]
    assert list(res.rows["Remark"]) == [PASS, FAIL]
    assert res.extras["ctdiw"]["body"] == pytest.approx(8.33)
