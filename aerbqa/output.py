# aerbqa/output.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping

import numpy as np
import pandas as pd

from aerbqa.results import SummaryEntry, TestResult, prefer_stored_remark
from aerbqa.stats import (
    coefficient_of_linearity,
    coefficient_of_variation,
    mean,
    parse_range_midpoint,
    percent_error,
    population_std,
)
from aerbqa.tolerance import (
    combine_remarks,
    compare,
    operator_label,
    read_operator_tolerance,
    read_tolerance,
    remark,
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

READING_KEYS = ("outputs", "measuredOutputs", "measurements", "readings")

# a single reading this far from its row mean fails the mA linearity row
CELL_DEVIATION_PCT = 10.0


def _readings(row: Mapping) -> np.ndarray:
    return numbers(first_present(row, *READING_KEYS))


def _conditions(doc: Mapping) -> Mapping:
    for k in ("table1", "testConditions", "settings"):
        v = doc.get(k)
        if isinstance(v, Mapping):
            return v
        if isinstance(v, list) and v and isinstance(v[0], Mapping):
            return v[0]
    return {}


# =============================================================================
# Reproducibility / consistency of radiation output
# =============================================================================
def reproducibility_of_output(
    doc: Mapping,
    *,
    percent: bool = True,
    default_value: float | None = None,
    key: str = "reproducibilityOfRadiationOutput",
    title: str = "Reproducibility of Radiation Output (COV)",
) -> TestResult:
    """
    Mean, population std and CoV of repeated output readings per
    exposure setting.

    percent=True reports CoV in % (default limit <= 5.0 %); otherwise CoV
    is a fraction (default limit <= 0.05). "<="/"<" pass when cov <= tol,
    ">="/">" when cov >= tol.
    """
    if default_value is None:
        default_value = 5.0 if percent else 0.05
    op, tol = read_operator_tolerance(doc, default_operator="<=", default_value=default_value)
    pass_op = "<=" if op in ("<=", "<") else ">="

    avg_digits, cv_digits = (3, 2) if percent else (4, 4)
    unit = "%" if percent else ""
    tol_text = operator_label(op, tol, unit)

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []
    cvs: List[float] = []
    labels: List[str] = []

    for row in as_rows(doc, "outputRows", "rows"):
        kv = fmt_plain(first_present(row, "kv", "kvp", "kV"), fallback="")
        mas = fmt_plain(first_present(row, "mas", "mAs"), fallback="")
        readings = _readings(row)

        if readings.size:
            avg = mean(readings)
            std = population_std(readings)
            cv = coefficient_of_variation(readings, percent=percent)
        else:
            avg = to_number(first_present(row, "avg", "mean"))
            std = np.nan
            cv = to_number(first_present(row, "cv", "cov"))

        if not kv and not mas and not np.isfinite(cv):
            continue

        r = remark(compare(cv, pass_op, tol)) if np.isfinite(cv) else UNDETERMINED
        remarks.append(r)

        if kv and mas:
            spec = f"{kv} kV, {mas} mAs"
        elif kv:
            spec = f"{kv} kV"
        else:
            spec = UNDETERMINED

        labels.append(spec)
        cvs.append(float(cv) if np.isfinite(cv) else np.nan)

        table.append(
            {
                "kV": kv or UNDETERMINED,
                "mAs": mas or UNDETERMINED,
                "Readings": ", ".join(f"{v:g}" for v in readings) if readings.size else UNDETERMINED,
                "Mean": fmt(avg, avg_digits, fallback=""),
                "Std Dev": fmt(std, avg_digits, fallback=""),
                "CoV (%)" if percent else "CoV": fmt(cv, cv_digits, fallback=""),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=spec,
                measured=fmt(cv, cv_digits),
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
        extras={"labels": labels, "cov": cvs, "operator": op, "tolerance_value": tol, "percent": bool(percent)},
        summary=summary,
        shared_tolerance=True,
    )


# =============================================================================
# Linearity (coefficient of linearity)
# =============================================================================
def _loading(row: Mapping, loading: str, cond_time: float) -> tuple[str, float]:
    if loading == "mA":
        raw = first_present(row, "ma", "mA", "mAApplied", "maApplied")
        ma = to_number(raw)
        t = to_number(first_present(row, "time", "timeSec"))
        if not np.isfinite(t):
            t = cond_time
        load = ma * t if np.isfinite(t) else ma
        return f"{fmt_plain(raw)} mA", load
    if loading == "time":
        raw = first_present(row, "time", "timeSec", "setTime")
        return f"{fmt_plain(raw)} s", to_number(raw)

    raw = first_present(row, "mAsApplied", "mAsRange", "mAs", "mas")
    return f"{fmt_plain(raw)} mAs", parse_range_midpoint(raw)


def linearity(
    doc: Mapping,
    *,
    loading: str = "mAs",
    check_cells: bool = False,
    default_value: float = 0.1,
    key: str = "linearityOfMasLoading",
    title: str = "Linearity of mAs Loading (Coefficient of Linearity)",
) -> TestResult:
    """
    X = mean output / loading factor per station, CoL = |Xmax - Xmin| / (Xmax + Xmin).

    loading: "mAs" (ranges such as "50-100" use the midpoint), "mA"
    (mA x exposure time from the row or the test conditions) or "time".
    check_cells additionally fails a station whose individual readings
    stray more than 10 % from the station mean.
    """
    if loading not in ("mAs", "mA", "time"):
        raise ValueError(f"linearity(): unknown loading '{loading}'")

    op, tol = read_operator_tolerance(doc, default_operator="<=", default_value=default_value)
    tol_text = operator_label(op, tol)
    cond_time = to_number(first_present(_conditions(doc), "time", "timeSec", "exposureTime"))

    stations = []
    for row in as_rows(doc, "table2", "rows", "linearityRows", "measurementRows"):
        label, load = _loading(row, loading, cond_time)
        readings = _readings(row)
        avg = mean(readings) if readings.size else to_number(first_present(row, "avg", "average"))
        if not np.isfinite(load) and not np.isfinite(avg):
            continue

        x = avg / load if np.isfinite(avg) and np.isfinite(load) and load > 0 else np.nan
        x = float(np.round(x, 4)) if np.isfinite(x) else np.nan

        flagged = 0
        if check_cells and readings.size and np.isfinite(avg) and avg > 0:
            flagged = int(np.sum(np.abs(readings - avg) / avg * 100.0 > CELL_DEVIATION_PCT))

        stations.append(
            {
                "label": label,
                "readings": readings,
                "avg": avg,
                "x": x,
                "flagged": flagged,
                "stored_remark": row.get("remark"),
            }
        )

    xs = np.array([s["x"] for s in stations], dtype=float)
    finite = xs[np.isfinite(xs)]
    col = coefficient_of_linearity(finite)
    col = float(np.round(col, 3)) if np.isfinite(col) else np.nan
    if not np.isfinite(col):
        # imported sheets may carry only the printed CoL
        col = to_number(first_present(doc, "coefficientOfLinearity", "col"))
    xmax = float(np.max(finite)) if finite.size else np.nan
    xmin = float(np.min(finite)) if finite.size else np.nan

    col_ok = compare(col, op, tol)
    table: List[Dict[str, Any]] = []
    remarks: List[str] = []
    for s in stations:
        if col_ok is None:
            r = UNDETERMINED
        else:
            r = remark(col_ok and s["flagged"] == 0)
        remarks.append(r)

        rec = {
            "Loading": s["label"],
            "Readings": ", ".join(f"{v:g}" for v in s["readings"]) if s["readings"].size else UNDETERMINED,
            "Mean Output": fmt(s["avg"], 4, fallback=""),
            "X": fmt(s["x"], 4, fallback=""),
            "X max": fmt(xmax, 4, fallback=""),
            "X min": fmt(xmin, 4, fallback=""),
            "CoL": fmt(col, 3, fallback=""),
        }
        if check_cells:
            rec["Readings > 10%"] = s["flagged"]
        rec["Remark"] = r
        table.append(rec)

    overall = combine_remarks(remarks) if stations else remark(col_ok)
    summary = []
    if np.isfinite(col):
        stored = [s["stored_remark"] for s in stations]
        summary.append(
            SummaryEntry(
                specified=", ".join(s["label"] for s in stations) or "Coefficient of Linearity",
                measured=f"CoL = {fmt(col, 3)}",
                tolerance=tol_text,
                remarks=prefer_stored_remark(stored[0] if stored else None, overall),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=overall,
        tolerance=tol_text,
        extras={
            "labels": [s["label"] for s in stations],
            "x": [s["x"] for s in stations],
            "x_max": xmax,
            "x_min": xmin,
            "col": col,
            "tolerance_value": tol,
            "loading": loading,
        },
        summary=summary,
    )


# =============================================================================
# CTDI
# =============================================================================
PERIPHERAL_KEYS = ("top", "bottom", "left", "right", "p1", "p2", "p3", "p4")


def weighted_ctdi(center: Any, peripheral: Any) -> float:
    """CTDIw = CTDIc / 3 + 2 * mean(CTDIp) / 3."""
    c = to_number(center)
    p = mean(numbers(peripheral))
    if not (np.isfinite(c) and np.isfinite(p)):
        return np.nan
    return float(np.round(c / 3.0 + 2.0 * p / 3.0, 2))


def ctdi(
    doc: Mapping,
    *,
    default_value: float = 20.0,
    key: str = "measurementOfCTDI",
    title: str = "Measurement of CTDI",
) -> TestResult:
    _, tol = read_tolerance(doc, default_value=default_value)
    tol_text = f"±{tol:g}% of quoted"

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []
    values: Dict[str, float] = {}

    for phantom in ("head", "body"):
        part = doc.get(phantom)
        if not isinstance(part, Mapping):
            continue

        center = first_present(part, "center", "centre", "ctdiC")
        peripheral = part.get("peripheral")
        if not isinstance(peripheral, list):
            peripheral = [part.get(k) for k in PERIPHERAL_KEYS if k in part]

        w = weighted_ctdi(center, peripheral)
        quoted = to_number(first_present(part, "quoted", "quotedCtdiw", "console"))
        dev = percent_error(w, quoted)
        r = remark(dev <= tol) if np.isfinite(dev) else UNDETERMINED
        remarks.append(r)
        values[phantom] = w

        table.append(
            {
                "Phantom": phantom.capitalize(),
                "Centre (mGy)": fmt(center, 2),
                "Peripheral Mean (mGy)": fmt(mean(numbers(peripheral)), 2),
                "CTDIw (mGy)": fmt(w, 2),
                "Quoted CTDIw (mGy)": fmt(quoted, 2),
                "Deviation (%)": fmt(dev, 2),
                "Remark": r,
            }
        )
        if np.isfinite(w):
            summary.append(
                SummaryEntry(
                    specified=f"{phantom.capitalize()}: {fmt(quoted, 2)} mGy",
                    measured=f"{fmt(w, 2)} mGy",
                    tolerance=tol_text,
                    remarks=prefer_stored_remark(part.get("remark"), r),
                )
            )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=tol_text,
        extras={"ctdiw": values},
        summary=summary,
    )
