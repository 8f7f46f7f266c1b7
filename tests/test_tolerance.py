import math

import pytest

from aerbqa.tolerance import (
    combine_remarks,
    compare,
    filtration_requirement,
    normalize_operator,
    normalize_sign,
    operator_label,
    read_operator_tolerance,
    read_tolerance,
    remark,
    tolerance_label,
    within_percent,
    within_signed_band,
    within_zero_band,
)
from aerbqa.values import FAIL, PASS, UNDETERMINED


def test_operator_aliases():
    assert normalize_operator("≤") == "<="
    assert normalize_operator("less than or equal to") == "<="
    assert normalize_operator("greater than") == ">"
    assert normalize_operator(None, default=">=") == ">="
    assert normalize_sign("+/-") == "±"
    assert normalize_sign("+") == "+"


def test_labels():
    assert tolerance_label("±", 5, "%") == "±5%"
    assert tolerance_label("+", 2, "kV") == "+2 kV"
    assert operator_label("<=", 0.1) == "≤ 0.1"
    assert tolerance_label("±", None) == UNDETERMINED


def test_read_tolerance_flat_nested_and_default():
    assert read_tolerance({"toleranceSign": "+", "toleranceValue": "3"}) == ("+", 3.0)
    assert read_tolerance({"tolerance": {"sign": "-", "value": 4}}) == ("-", 4.0)
    assert read_tolerance({"tolerance": "7"}) == ("±", 7.0)
    assert read_tolerance({}, default_value=2.0) == ("±", 2.0)


def test_read_operator_tolerance():
    assert read_operator_tolerance({"tolerance": {"operator": ">=", "value": 99}}) == (">=", 99.0)
    assert read_operator_tolerance(None, default_value=10.0) == ("<=", 10.0)


def test_compare_operators():
    assert compare(5, "<=", 5) is True
    assert compare(5, "<", 5) is False
    assert compare(5.0004, "=", 5) is True
    assert compare(None, "<=", 5) is None
    assert compare(1, "??", 5) is None


def test_signed_band():
    assert within_signed_band(82, 80, "±", 2) is True
    assert within_signed_band(82.5, 80, "±", 2) is False
    # one-sided: "+" only limits the upper side
    assert within_signed_band(70, 80, "+", 2) is True
    assert within_signed_band(90, 80, "-", 2) is True
    assert within_signed_band(80, 80, "±", 0) is None


def test_percent_band():
    assert within_percent(82, 80, "±", 5) is True
    assert within_percent(85, 80, "±", 5) is False
    assert within_percent(82, 0, "±", 5) is None


def test_zero_band():
    assert within_zero_band(1.5, "±", 2) is True
    assert within_zero_band(-0.5, "+", 2) is False
    assert within_zero_band(-0.5, "-", 2) is True


@pytest.mark.parametrize("kvp, required", [(60, 1.5), (70, 2.0), (100, 2.0), (110, 2.5)])
def test_filtration_requirement(kvp, required):
    assert filtration_requirement(kvp) == required


def test_filtration_requirement_custom_bands():
    assert filtration_requirement(80, {"forKvBetween70And100": "2.2"}) == 2.2
    assert math.isnan(filtration_requirement(None))


def test_remarks():
    assert remark(True) == PASS
    assert remark(False) == FAIL
    assert remark(None) == UNDETERMINED
    assert combine_remarks([PASS, FAIL, UNDETERMINED]) == FAIL
    assert combine_remarks([PASS, UNDETERMINED]) == PASS
    assert combine_remarks([]) == UNDETERMINED
