# aerbqa/kvp_timing.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from aerbqa.results import SummaryEntry, TestResult, prefer_stored_remark
from aerbqa.stats import mean, percent_deviation, percent_error
from aerbqa.tolerance import (
    combine_remarks,
    compare,
    filtration_requirement,
    operator_symbol,
    read_operator_tolerance,
    read_tolerance,
    remark,
    tolerance_label,
    within_percent,
    within_signed_band,
)
from aerbqa.values import (
    UNDETERMINED,
    as_rows,
    first_present,
    fmt,
    fmt_plain,
    numbers,
    to_number,
)

KVP_ROW_KEYS = ("rows", "measurements", "table2")
APPLIED_KVP_KEYS = ("appliedKvp", "appliedkVp", "setKvp", "setKV", "kvp")


def _join_readings(a: np.ndarray, digits: int = 2) -> str:
    if a.size == 0:
        return UNDETERMINED
    return ", ".join(f"{v:.{digits}f}".rstrip("0").rstrip(".") for v in a)


def _round(x: float, digits: int) -> float:
    return float(np.round(x, digits)) if np.isfinite(x) else np.nan


# =============================================================================
# Accuracy of operating potential (kVp)
# =============================================================================
def accuracy_of_operating_potential(
    doc: Mapping,
    *,
    percent: bool = False,
    digits: int = 2,
    default_sign: str = "±",
    default_value: float = 5.0,
    key: str = "accuracyOfOperatingPotential",
    title: str = "Accuracy of Operating Potential (kVp Accuracy)",
) -> TestResult:
    """
    Average of the measured kVp readings against the applied kVp.

    Absolute mode compares in kV (|avg - applied| <= tol for "±",
    one-sided for "+"/"-"); percent mode compares the percentage
    deviation. A row without an applied kVp or readings, or with a
    non-positive tolerance, is left undetermined.
    """
    sign, tol = read_tolerance(
        doc,
        sign_keys=("kvpToleranceSign", "toleranceSign"),
        value_keys=("kvpToleranceValue", "toleranceValue"),
        default_sign=default_sign,
        default_value=default_value,
    )
    unit = "%" if percent else "kV"
    tol_text = tolerance_label(sign, tol, unit)

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, *KVP_ROW_KEYS):
        applied_raw = first_present(row, *APPLIED_KVP_KEYS)
        applied = to_number(applied_raw)
        readings = numbers(first_present(row, "measuredValues", "measured", "readings"))

        if readings.size:
            avg = _round(mean(readings), digits)
        else:
            avg = to_number(first_present(row, "avgKvp", "averageKvp", "average"))

        if not np.isfinite(applied) and not np.isfinite(avg):
            continue

        if percent:
            ok = within_percent(avg, applied, sign, tol)
        else:
            ok = within_signed_band(avg, applied, sign, tol)
        r = remark(ok)
        remarks.append(r)

        table.append(
            {
                "Applied kVp": fmt_plain(applied_raw),
                "Measured kVp": _join_readings(readings),
                "Average kVp": fmt(avg, digits),
                "Deviation (kV)": fmt(avg - applied, digits),
                "Deviation (%)": fmt(percent_deviation(avg, applied), 2),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{fmt_plain(applied_raw)} kVp",
                measured=fmt(avg, digits),
                tolerance=tol_text,
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=tol_text,
        extras={"tolerance_sign": sign, "tolerance_value": tol, "percent": bool(percent)},
        summary=summary,
    )


# =============================================================================
# Combined kVp + irradiation time (BMD / dental intra-oral)
# =============================================================================
def _station_pairs(row: Mapping) -> List[Mapping]:
    """Per-mA-station {kvp, time} pairs, migrating legacy maStation1/maStation2."""
    pairs = row.get("measuredValues")
    if isinstance(pairs, list) and pairs:
        return [p for p in pairs if isinstance(p, Mapping)]

    out = []
    for legacy in ("maStation1", "maStation2"):
        p = row.get(legacy)
        if isinstance(p, Mapping):
            out.append(p)
    return out


def accuracy_of_operating_potential_and_time(
    doc: Mapping,
    *,
    part: str = "both",
    kvp_percent: bool = False,
    key: str = "accuracyOfOperatingPotentialAndTime",
    title: str = "Accuracy of Operating Potential and Irradiation Time",
) -> TestResult:
    """
    Per-mA-station kVp and time readings against the applied kVp and set
    time.

    ``part`` selects what is judged: ``"both"`` (one verdict per row, Pass
    only when kVp and time pass), ``"kvp"`` or ``"time"``. BMD reports the
    two as separate summary parameters, with kVp judged by percent
    deviation (``kvp_percent``).
    """
    if part not in ("both", "kvp", "time"):
        raise ValueError(f"accuracy_of_operating_potential_and_time(): unknown part '{part}'")

    kvp_sign, kvp_tol = read_tolerance(
        doc,
        sign_keys=("kvpToleranceSign",),
        value_keys=("kvpToleranceValue",),
        default_value=5.0,
        nested_key="kvpTolerance",
    )
    time_sign, time_tol = read_tolerance(
        doc,
        sign_keys=("timeToleranceSign",),
        value_keys=("timeToleranceValue",),
        default_value=10.0,
        nested_key="timeTolerance",
    )
    # time tolerance is either symmetric or an upper limit
    if time_sign != "±":
        time_sign = "+"

    kvp_text = tolerance_label(kvp_sign, kvp_tol, "%" if kvp_percent else "kV")
    time_text = tolerance_label(time_sign, time_tol, "%")

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, *KVP_ROW_KEYS):
        pairs = _station_pairs(row)
        kvps = numbers([p.get("kvp") for p in pairs])
        times = numbers([p.get("time") for p in pairs])

        applied = to_number(first_present(row, *APPLIED_KVP_KEYS))
        set_time = to_number(first_present(row, "setTime", "time"))
        if not np.isfinite(applied) and not np.isfinite(set_time) and not pairs:
            continue

        avg_kvp = _round(mean(kvps), 1)
        if not np.isfinite(avg_kvp):
            avg_kvp = to_number(first_present(row, "avgKvp", "averageKvp"))
        avg_time = _round(mean(times), 3)
        if not np.isfinite(avg_time):
            avg_time = to_number(first_present(row, "avgTime", "averageTime"))

        kvp_ok = None
        if applied > 0 and np.isfinite(avg_kvp):
            if kvp_percent:
                kvp_ok = within_percent(avg_kvp, applied, kvp_sign, kvp_tol)
            else:
                kvp_ok = within_signed_band(avg_kvp, applied, kvp_sign, kvp_tol)
        time_ok = None
        if set_time > 0 and np.isfinite(avg_time):
            time_ok = within_percent(avg_time, set_time, time_sign, time_tol)

        if part == "kvp":
            r = remark(kvp_ok)
        elif part == "time":
            r = remark(time_ok)
        elif kvp_ok is None or time_ok is None:
            r = UNDETERMINED
        else:
            r = remark(kvp_ok and time_ok)
        remarks.append(r)

        line: Dict[str, Any] = {}
        if part != "time":
            line.update(
                {
                    "Applied kVp": fmt(applied, 1),
                    "Measured kVp": _join_readings(kvps),
                    "Average kVp": fmt(avg_kvp, 1),
                    "Deviation (%)": fmt(percent_deviation(avg_kvp, applied), 2),
                }
            )
        if part != "kvp":
            line.update(
                {
                    "Set Time (s)": fmt(set_time, 3),
                    "Measured Time (s)": _join_readings(times, digits=3),
                    "Average Time (s)": fmt(avg_time, 3),
                    "Time Error (%)": fmt(percent_error(avg_time, set_time), 2),
                }
            )
        line["Remark"] = r
        table.append(line)

        stored = prefer_stored_remark(row.get("remark"), r)
        if part == "kvp":
            summary.append(SummaryEntry(f"{fmt(applied, 1)} kV", fmt(avg_kvp, 1), kvp_text, stored))
        elif part == "time":
            summary.append(SummaryEntry(f"{fmt(set_time, 3)} s", fmt(avg_time, 3), time_text, stored))
        else:
            summary.append(
                SummaryEntry(
                    specified=f"{fmt(applied, 1)} kV / {fmt(set_time, 3)} s",
                    measured=f"{fmt(avg_kvp, 1)} kV / {fmt(avg_time, 3)} s",
                    tolerance=f"{kvp_text} / {time_text}",
                    remarks=stored,
                )
            )

    if part == "kvp":
        tol_text = kvp_text
    elif part == "time":
        tol_text = time_text
    else:
        tol_text = f"kVp {kvp_text}; time {time_text}"

    stations = doc.get("mAStations") if isinstance(doc.get("mAStations"), list) else []
    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=tol_text,
        extras={"mA_stations": [str(s) for s in stations], "part": part},
        summary=summary,
    )


# =============================================================================
# Accuracy of irradiation time / timer accuracy
# =============================================================================
def time_error_verdict(error_pct: Any, operator: Any, tol: Any) -> Optional[bool]:
    """
    "<" and "<=" state the passing region, ">" and ">=" state the
    failing region (error > tol -> Fail).
    """
    err = to_number(error_pct)
    if not np.isfinite(err):
        return None
    op = str(operator)
    if op in (">", ">="):
        hit = compare(err, op, tol)
        return None if hit is None else not hit
    return compare(err, op, tol)


def accuracy_of_irradiation_time(
    doc: Mapping,
    *,
    default_operator: str = "<=",
    default_value: float = 10.0,
    key: str = "accuracyOfIrradiationTime",
    title: str = "Accuracy of Irradiation Time",
) -> TestResult:
    op, tol = read_operator_tolerance(
        doc,
        default_operator=default_operator,
        default_value=default_value,
    )
    tol_text = f"{operator_symbol(op)} {tol:g}%"
    if op in (">", ">="):
        # failing region given; print the passing side
        tol_text = f"{'≤' if op == '>' else '<'} {tol:g}%"

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "irradiationTimes", "timerRows", "rows"):
        set_time = to_number(first_present(row, "setTime", "set"))
        measured_raw = first_present(row, "measuredTime", "observedTime", "avgTime", "measured")
        if isinstance(measured_raw, list):
            measured = mean(numbers(measured_raw))
        else:
            measured = to_number(measured_raw)

        if not np.isfinite(set_time) and not np.isfinite(measured):
            continue

        err = _round(percent_error(measured, set_time), 2)
        r = remark(time_error_verdict(err, op, tol))
        remarks.append(r)

        table.append(
            {
                "Set Time (ms)": fmt_plain(first_present(row, "setTime", "set")),
                "Measured Time (ms)": fmt(measured, 3),
                "Error (%)": fmt(err, 2),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=fmt_plain(first_present(row, "setTime", "set")),
                measured=fmt(measured, 3),
                tolerance=tol_text,
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    conditions = doc.get("testConditions") if isinstance(doc.get("testConditions"), Mapping) else {}
    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=tol_text,
        extras={
            "fcd": to_number(conditions.get("fcd")),
            "kv": to_number(conditions.get("kv")),
            "ma": to_number(conditions.get("ma")),
        },
        summary=summary,
    )


# =============================================================================
# Total filtration
# =============================================================================
def total_filtration(
    doc: Mapping,
    *,
    key: str = "totalFiltration",
    title: str = "Total Filtration",
) -> TestResult:
    """
    Measured filtration (mm Al) against the three-band requirement for
    the kVp it was measured at. Records without a kVp fall back to the
    stored required value.
    """
    tf = doc.get("totalFiltration") if isinstance(doc.get("totalFiltration"), Mapping) else doc
    bands = first_present(doc, "filtrationTolerance", "filtrationBands", default={})
    if not isinstance(bands, Mapping):
        bands = {}

    measured = to_number(first_present(tf, "measured", "measuredValue"))
    at_kvp = to_number(first_present(tf, "atKvp", "kvp", "kv"))
    if np.isfinite(at_kvp):
        required = filtration_requirement(at_kvp, bands)
    else:
        required = to_number(first_present(tf, "required", "requiredValue"))

    ok = None
    if np.isfinite(measured) and np.isfinite(required):
        ok = measured >= required
    r = remark(ok)

    table = []
    if np.isfinite(measured) or np.isfinite(at_kvp):
        table.append(
            {
                "At kVp": fmt(at_kvp, 0),
                "Measured (mm Al)": fmt(measured, 2),
                "Required (mm Al)": fmt(required, 1),
                "Remark": r,
            }
        )
    summary = []
    if np.isfinite(measured):
        summary.append(
            SummaryEntry(
                specified=f"at {fmt(at_kvp, 0)} kVp",
                measured=f"{fmt(measured, 2)} mm Al",
                tolerance=f"≥ {fmt(required, 1)} mm Al",
                remarks=prefer_stored_remark(tf.get("remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=r,
        tolerance=f"≥ {fmt(required, 1)} mm Al",
        extras={"required_mm_al": required, "measured_mm_al": measured},
        summary=summary,
    )
