import pytest

from aerbqa.api import build_report


@pytest.fixture
def header_data():
    return {
        "customerName": "City Diagnostics",
        "address": "12 MG Road, Pune",
        "srfNumber": "SRF-101",
        "srfDate": "2024-03-01",
        "testReportNumber": "TR-2024-07",
        "issueDate": "2024-03-10",
        "make": "Hologic",
        "model": "Horizon",
        "slNumber": "HX-9981",
        "engineerNameRPId": "A. Rao / RP-22",
        "testDate": "2024-03-05",
        "testDueDate": "2026-03-04",
        "location": "Room 3",
        "toolsUsed": [
            {
                "nomenclature": "Multimeter",
                "make": "RTI",
                "model": "Piranha",
                "SrNo": "P-1",
                "range": "40-150 kV",
                "calibrationCertificateNo": "CC-9",
                "calibrationValidTill": "2025-01-31",
            }
        ],
    }


@pytest.fixture
def bmd_documents():
    return {
        "accuracyOfOperatingPotentialAndTime": {
            "rows": [
                {
                    "appliedKvp": 70,
                    "setTime": 0.1,
                    "measuredValues": [{"kvp": 71, "time": 0.10}, {"kvp": 69, "time": 0.11}],
                },
                {
                    "appliedKvp": 100,
                    "setTime": 0.1,
                    "maStation1": {"kvp": 99, "time": 0.10},
                    "maStation2": {"kvp": 101, "time": 0.10},
                },
            ],
            "kvpTolerance": {"sign": "±", "value": 5},
            "timeTolerance": {"sign": "±", "value": 10},
        },
        "reproducibilityOfRadiationOutput": {
            "outputRows": [{"kv": 80, "mas": 20, "outputs": [1.00, 1.01, 0.99, 1.00, 1.00]}],
        },
        "linearityOfMaLoading": {
            "table1": {"time": 0.1},
            "table2": [
                {"ma": 100, "outputs": [5.0, 5.0]},
                {"ma": 200, "outputs": [10.0, 10.0]},
            ],
        },
        "tubeHousingLeakage": {
            "settings": {"ma": 3},
            "workload": 180,
            "leakageRows": [{"location": "Tube", "left": 10, "right": 60, "front": 5}],
        },
        "radiationProtectionSurvey": {
            "workload": 500,
            "appliedCurrent": 100,
            "locations": [
                {"location": "Control console", "mRPerHr": 2, "category": "worker"},
                {"location": "Corridor", "mRPerHr": 0.5, "category": "public"},
            ],
        },
        "maxRadiationLevel": {
            "readings": [{"mRPerHr": 0.01}, {"mRPerHr": 0.02}, {"mRPerHr": 0.001}],
        },
    }


@pytest.fixture
def radiography_documents():
    return {
        "accuracyOfOperatingPotential": {
            "rows": [
                {"appliedKvp": "60", "measuredValues": ["61", "60.5"]},
                {"appliedKvp": "80", "measuredValues": ["82", "83"]},
            ],
            "tolerance": {"sign": "±", "value": 2},
            "totalFiltration": {"measured": 2.6, "atKvp": 80},
        },
        "congruence": {
            "congruenceRows": [
                {"dimension": "X1", "observedShift": 1.0, "edgeShift": 0.5},
                {"dimension": "Y1", "observedShift": 2.0, "edgeShift": 0.5},
            ]
        },
        "linearityOfMasLoading": {
            "table2": [
                {"mAsApplied": "10", "outputs": [1.0, 1.0]},
                {"mAsApplied": "20", "outputs": [2.0, 2.0]},
            ]
        },
    }


@pytest.fixture
def bmd_report(header_data, bmd_documents):
    return build_report("SVC-1", "BMD", header_data, bmd_documents)
