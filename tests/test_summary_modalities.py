import logging

import pandas as pd
import pytest

from aerbqa.header import DEFAULT_NOTES, format_date, normalize_header, tools_frame
from aerbqa.modalities import (
    Modality,
    TestSpec,
    evaluate_report,
    get_modality,
    modality_names,
)
from aerbqa.results import SummaryEntry, TestResult
from aerbqa.summary import build_summary, count_remarks, display_summary, overall_status, split_mechanical
from aerbqa.values import FAIL, PASS, UNDETERMINED


def _result(title, entries, shared=False, remark=PASS):
    return TestResult(key=title, title=title, remark=remark, summary=entries, shared_tolerance=shared)


# =============================================================================
# Summary
# =============================================================================
def test_build_summary_numbers_and_spans():
    results = [
        _result("A", [SummaryEntry("80 kVp", "81", "±5%", PASS), SummaryEntry("100 kVp", "99", "±5%", PASS)]),
        _result("Empty", []),
        _result("B", [SummaryEntry("x", "1", "≤ 5%", PASS), SummaryEntry("y", "2", "≤ 5%", FAIL)], shared=True),
    ]
    df = build_summary(results)

    assert list(df["Sr. No."].dropna().astype(int)) == [1, 2]
    assert list(df["row_span"]) == [2, 0, 2, 0]
    assert list(df["tolerance_span"]) == [0, 0, 2, 0]
    assert pd.isna(df.loc[3, "Tolerance"])
    assert list(df["first_row"]) == [True, False, True, False]


def test_display_summary_blanks_merged_cells():
    df = display_summary(build_summary([_result("A", [SummaryEntry("a", "1", "t"), SummaryEntry("b", "2", "t")])]))
    assert list(df.columns) == ["Sr. No.", "Parameter", "Specified", "Measured", "Tolerance", "Remarks"]
    assert list(df["Sr. No."]) == ["1", ""]
    assert list(df["Parameter"]) == ["A", ""]


def test_overall_status_and_counts():
    results = [_result("A", [], remark=PASS), _result("B", [], remark=FAIL), _result("C", [], remark=UNDETERMINED)]
    assert overall_status(results) == "FAIL"
    assert overall_status(results[:1]) == "PASS"
    assert overall_status([]) == "INCOMPLETE"
    assert count_remarks(results) == {"PASS": 1, "FAIL": 1, "INCOMPLETE": 1}


# =============================================================================
# Registry
# =============================================================================
@pytest.mark.parametrize(
    "label, name",
    [("BMD", "BMD"), ("dexa", "BMD"), ("ct", "CT Scan"), ("ct-scan", "CT Scan"), ("Dental Cone Beam CT", "Dental CBCT")],
)
def test_get_modality_aliases(label, name):
    assert get_modality(label).name == name


def test_get_modality_unknown():
    with pytest.raises(KeyError):
        get_modality("Ultrasound")


def test_catalogue_is_consistent():
    names = modality_names()
    assert len(names) == len(set(names))
    for n in names:
        mod = get_modality(n)
        assert mod.tests
        assert len({t.key for t in mod.tests}) == len(mod.tests)


def test_api_paths():
    ct = get_modality("CT Scan")
    paths = {t.key: t.api_path for t in ct.tests}
    assert paths["measurementOfCTDI"] == "measurement-of-ctdi"
    assert paths["totalFiltration"] == "accuracy-of-operating-potential"


def test_evaluate_report_shares_kvp_record(radiography_documents):
    results = evaluate_report("Radiography Fixed", radiography_documents)
    keys = [r.key for r in results]
    assert keys == ["accuracyOfOperatingPotential", "totalFiltration", "congruence", "linearityOfMasLoading"]
    assert results[0].remark == FAIL
    assert results[1].remark == PASS


def test_evaluate_report_keeps_going_on_bad_record(caplog):
    def broken(doc, **kw):
        raise ValueError("bad record")

    mod = Modality(
        "Test",
        "Test",
        "test",
        (TestSpec("broken", "Broken", broken), get_modality("Lead Apron").tests[0]),
    )
    docs = {"broken": {"x": 1}, "leadApron": {"neutral": 100, "positions": [0.5]}, "unused": {}}
    with caplog.at_level(logging.WARNING, logger="aerbqa"):
        results = evaluate_report(mod, docs)

    assert [r.key for r in results] == ["broken", "leadApron"]
    assert results[0].error == "bad record"
    assert results[0].status == "INCOMPLETE"
    assert "could not be evaluated" in caplog.text


def test_bmd_summary_splits_kvp_and_time():
    docs = {
        "accuracyOfOperatingPotentialAndTime": {
            "rows": [{"appliedKvp": 60, "setTime": 0.1, "measuredValues": [{"kvp": 64, "time": 0.1}]}],
            "kvpTolerance": {"sign": "±", "value": 5},
        }
    }
    results = evaluate_report("BMD", docs)
    assert [r.key for r in results] == ["accuracyOfOperatingPotential", "accuracyOfIrradiationTime"]

    df = build_summary(results)
    assert list(df["Parameter"]) == [
        "Accuracy of Operating Potential (kVp Accuracy)",
        "Accuracy of Irradiation Time",
    ]
    assert df.loc[0, "Tolerance"] == "±5%"
    assert df.loc[0, "Remarks"] == FAIL
    assert df.loc[1, "Remarks"] == PASS


def test_evaluate_report_skips_missing_records(bmd_documents):
    docs = dict(bmd_documents)
    docs["maxRadiationLevel"] = None
    docs["tubeHousingLeakage"] = {}
    keys = [r.key for r in evaluate_report("BMD", docs)]
    assert "maxRadiationLevel" not in keys
    assert "tubeHousingLeakage" not in keys
    assert len(keys) == 5


@pytest.mark.parametrize(
    "label, name",
    [
        ("obi", "OBI"),
        ("On Board Imager", "OBI"),
        ("mobile ht", "Radiography Mobile HT"),
        ("radiography-portable", "Radiography Portable"),
    ],
)
def test_additional_modalities_registered(label, name):
    assert get_modality(label).name == name


def _keys(name):
    return [t.key for t in get_modality(name).tests]


def test_added_test_records():
    assert {"imagingPhantom", "equipmentSetting", "maxRadiationLevel"} <= set(_keys("Mammography"))
    assert "tablePosition" in _keys("CT Scan")
    assert "radiationLeakageLevel" in _keys("Radiography Portable")
    assert {"alignmentTest", "timerTest", "congruenceOfRadiation", "linearityOfTime"} <= set(_keys("OBI"))


def test_evaluate_obi_records():
    docs = {
        "timerTest": {"irradiationTimes": [{"setTime": 100, "measuredTime": 103}]},
        "congruenceOfRadiation": {
            "techniqueRows": [{"fcd": "100"}],
            "congruenceMeasurements": [{"dimension": "X1", "observedShift": "0.5", "edgeShift": "0.5"}],
        },
        "linearityOfTime": {
            "testConditions": {"fdd": "100", "kv": "80", "time": "0.1"},
            "measurementRows": [
                {"maApplied": "50", "measuredOutputs": ["0.50", "0.50"]},
                {"maApplied": "100", "measuredOutputs": ["1.00", "1.02"]},
            ],
        },
        "alignmentTest": {"testRows": [{"testName": "Laser", "sign": "≤", "value": "1", "measured": "0.4"}]},
    }
    results = {r.key: r for r in evaluate_report("OBI", docs)}
    assert list(results) == ["timerTest", "congruenceOfRadiation", "linearityOfTime", "alignmentTest"]
    assert results["timerTest"].remark == PASS
    assert results["congruenceOfRadiation"].rows.loc[0, "%FED"] == "1.00"
    assert results["linearityOfTime"].extras["x"] == pytest.approx([0.1, 0.101])
    assert results["linearityOfTime"].remark == PASS
    assert results["alignmentTest"].remark == PASS


def test_mechanical_results_split_from_summary():
    docs = {
        "radiationProfileWidth": {"rows": [{"applied": 5, "measured": 5.5}]},
        "gantryTilt": {"result": 1.0},
        "tablePosition": {"tableIncrementation": [{"expected": 100, "measured": 101}]},
    }
    main, mechanical = split_mechanical(evaluate_report("CT Scan", docs))
    assert [r.key for r in main] == ["radiationProfileWidth"]
    assert [r.key for r in mechanical] == ["gantryTilt", "tablePosition"]
    assert list(build_summary(mechanical)["Sr. No."].dropna().astype(int)) == [1, 2]


# =============================================================================
# Header
# =============================================================================
def test_normalize_header_defaults():
    h = normalize_header({}, nomenclature="BMD/DEXA")
    assert h["customerName"] == "N/A"
    assert h["nomenclature"] == "BMD/DEXA"
    assert h["category"] == "-"
    assert h["condition"] == "OK"
    assert h["toolsUsed"] == []
    assert len(h["notes"]) == len(DEFAULT_NOTES)


def test_normalize_header_keeps_values(header_data):
    h = normalize_header(header_data, nomenclature="BMD/DEXA")
    assert h["customerName"] == "City Diagnostics"
    assert h["toolsUsed"][0]["SrNo"] == "P-1"
    assert h["notes"][0]["slNo"] == "5.1"


@pytest.mark.parametrize("raw, out", [("2024-03-05", "05/03/2024"), ("", "-"), (None, "-"), ("pending", "pending")])
def test_format_date(raw, out):
    assert format_date(raw) == out


def test_tools_frame(header_data):
    df = tools_frame(normalize_header(header_data))
    assert isinstance(df, pd.DataFrame)
    assert df.loc[0, "calibrationValidTill"] == "31/01/2025"
    assert tools_frame(normalize_header({})).empty
