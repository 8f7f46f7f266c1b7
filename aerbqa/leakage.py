# aerbqa/leakage.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from aerbqa.results import SummaryEntry, TestResult, prefer_stored_remark
from aerbqa.stats import mean
from aerbqa.tolerance import (
    combine_remarks,
    compare,
    operator_symbol,
    read_operator_tolerance,
    read_tolerance,
    remark,
)
from aerbqa.values import (
    PASS,
    UNDETERMINED,
    as_rows,
    first_present,
    fmt,
    numbers,
    to_number,
    to_positive,
)

# =============================================================================
# Constants
# =============================================================================
MR_PER_MGY = 114.0
DIRECTIONS = ("left", "right", "front", "back", "top", "up", "down")

WORKER_LIMIT_MR_WEEK = 40.0
PUBLIC_LIMIT_MR_WEEK = 2.0
# per-reading limits of the maximum radiation level survey
WORKER_LIMIT_MR_HR = 2.0
PUBLIC_LIMIT_MR_HR = 0.2

# fixed BMD workload used for the maximum radiation level survey
BMD_WORKLOAD = 25000.0
BMD_CURRENT_MA = 100.0

LEAD_APRON_MIN_REDUCTION_PCT = 99.0


def _settings(doc: Mapping) -> Mapping:
    for k in ("settings", "measurementSettings", "exposureSettings"):
        v = doc.get(k)
        if isinstance(v, Mapping):
            return v
        if isinstance(v, list) and v and isinstance(v[0], Mapping):
            return v[0]
    return {}


def to_mr_per_hr(value: Any, unit: Optional[str]) -> float:
    """Reading in mR/h; mGy/h readings are converted with 1 mGy = 114 mR."""
    v = to_number(value)
    if not np.isfinite(v):
        return np.nan
    if unit and "gy" in str(unit).lower():
        return v * MR_PER_MGY
    return v


def leakage_in_one_hour_mr(workload: Any, max_mr_per_hr: Any, ma: Any) -> float:
    """(workload x max exposure) / (60 x mA), in mR."""
    w, x, m = to_number(workload), to_number(max_mr_per_hr), to_number(ma)
    if not (np.isfinite(w) and np.isfinite(x) and np.isfinite(m)) or m <= 0:
        return np.nan
    return w * x / (60.0 * m)


# =============================================================================
# Tube housing leakage
# =============================================================================
def tube_housing_leakage(
    doc: Mapping,
    *,
    fixed_ma: Optional[float] = None,
    key: str = "tubeHousingLeakage",
    title: str = "Radiation Leakage Level from X-Ray Tube Housing",
) -> TestResult:
    """
    Per-location maximum of the directional readings, scaled to the
    weekly workload and expressed as leakage in one hour (mR and mGy).

    fixed_ma replaces the measured tube current (C-Arm and dental hand-held
    records use 100 mA).
    """
    settings = _settings(doc)
    ma = float(fixed_ma) if fixed_ma is not None else to_number(first_present(settings, "ma", "mA"))
    workload = to_number(first_present(doc, "workload", default=settings.get("workload")))

    op, tol = read_operator_tolerance(doc, default_operator="<=", default_value=1.0)
    tol_text = f"{operator_symbol(op)} {tol:g} mGy in one hour"

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []
    worst_mgy = np.nan
    worst_location = None

    for row in as_rows(doc, "leakageRows", "leakageMeasurements", "rows"):
        location = str(first_present(row, "location", "position", default="")).strip()
        unit = first_present(row, "unit", default=doc.get("unit") or "mR/hr")

        vals = numbers([row.get(d) for d in DIRECTIONS if d in row])
        mx = float(np.max(vals)) if vals.size else to_positive(first_present(row, "max"))
        if not location and not np.isfinite(mx):
            continue

        mx_mr = to_mr_per_hr(mx, unit)
        result_mr = leakage_in_one_hour_mr(workload, mx_mr, ma)
        result_mr = float(np.round(result_mr, 3)) if np.isfinite(result_mr) else np.nan
        result_mgy = float(np.round(result_mr / MR_PER_MGY, 4)) if np.isfinite(result_mr) else np.nan

        r = remark(compare(result_mgy, op, tol))
        remarks.append(r)

        if np.isfinite(result_mgy) and (not np.isfinite(worst_mgy) or result_mgy > worst_mgy):
            worst_mgy = result_mgy
            worst_location = location or None

        rec = {"Location": location or UNDETERMINED}
        for d in DIRECTIONS:
            if d in row:
                rec[d.capitalize()] = fmt(row.get(d), 2)
        rec.update(
            {
                "Max": fmt(mx, 2),
                "Unit": str(unit),
                "Leakage (mR in 1 h)": fmt(result_mr, 3),
                "Leakage (mGy in 1 h)": fmt(result_mgy, 4),
                "Remark": r,
            }
        )
        table.append(rec)
        summary.append(
            SummaryEntry(
                specified=location or UNDETERMINED,
                measured=f"{fmt(result_mgy, 4)} mGy" if np.isfinite(result_mgy) else UNDETERMINED,
                tolerance=tol_text,
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    overall = remark(compare(worst_mgy, op, tol)) if np.isfinite(worst_mgy) else combine_remarks(remarks)
    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=overall,
        tolerance=tol_text,
        extras={
            "workload": workload,
            "ma": ma,
            "max_leakage_mgy": worst_mgy,
            "max_location": worst_location,
        },
        summary=summary,
    )


# =============================================================================
# Radiation protection survey
# =============================================================================
def weekly_dose_mr(workload: Any, mr_per_hr: Any, ma: Any) -> float:
    w, x, m = to_number(workload), to_number(mr_per_hr), to_number(ma)
    if not (np.isfinite(w) and np.isfinite(x)):
        return np.nan
    if not np.isfinite(m) or m <= 0:
        m = 1.0
    return float(np.round(w * x / (60.0 * m), 3))


def _limit_for(category: Any) -> tuple[str, float]:
    c = str(category or "").strip().lower()
    if c.startswith("work"):
        return "worker", WORKER_LIMIT_MR_WEEK
    return "public", PUBLIC_LIMIT_MR_WEEK


def _weekly_remark(weekly: float, limit: float) -> str:
    # zero readings are left blank on the report
    if not np.isfinite(weekly) or weekly == 0:
        return UNDETERMINED
    return remark(weekly <= limit)


def radiation_protection_survey(
    doc: Mapping,
    *,
    key: str = "radiationProtectionSurvey",
    title: str = "Radiation Protection Survey",
) -> TestResult:
    """
    Weekly dose at each surveyed location: (workload x mR/h) / (60 x mA),
    compared with 40 mR/week for worker and 2 mR/week for public areas.
    """
    ma = to_number(first_present(doc, "appliedCurrent", "mA", "ma"))
    workload = to_number(first_present(doc, "workload"))

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []
    maxima = {"worker": np.nan, "public": np.nan}

    for loc in as_rows(doc, "locations", "rows"):
        name = str(first_present(loc, "location", default="")).strip()
        mr_hr = to_number(first_present(loc, "mRPerHr", "mRperHr", "exposure"))
        if not name and not np.isfinite(mr_hr):
            continue

        category, limit = _limit_for(loc.get("category"))
        weekly = weekly_dose_mr(workload, mr_hr, ma)
        r = _weekly_remark(weekly, limit)
        remarks.append(r)

        if np.isfinite(weekly) and not (weekly <= maxima[category]):
            maxima[category] = weekly

        table.append(
            {
                "Location": name or UNDETERMINED,
                "Category": category.capitalize(),
                "mR/h": fmt(mr_hr, 3),
                "mR/week": fmt(weekly, 3),
                "Limit (mR/week)": f"{limit:g}",
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=name or UNDETERMINED,
                measured=f"{fmt(weekly, 3)} mR/week" if np.isfinite(weekly) else UNDETERMINED,
                tolerance=f"≤ {limit:g} mR/week",
                remarks=prefer_stored_remark(first_present(loc, "result", "remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=f"Worker ≤ {WORKER_LIMIT_MR_WEEK:g} mR/week; Public ≤ {PUBLIC_LIMIT_MR_WEEK:g} mR/week",
        extras={
            "max_worker_mr_week": maxima["worker"],
            "max_public_mr_week": maxima["public"],
            "applied_current_ma": ma if np.isfinite(ma) and ma > 0 else 1.0,
            "workload": workload,
        },
        summary=summary,
    )


# =============================================================================
# Maximum radiation level (BMD)
# =============================================================================
def max_radiation_level(
    doc: Mapping,
    *,
    worker_positions: int = 2,
    key: str = "maxRadiationLevel",
    title: str = "Maximum Radiation Level",
) -> TestResult:
    """
    Survey readings at the fixed BMD workload. Each reading is judged in
    mR/h (2 mR/h at operator positions, 0.2 mR/h in public areas); the
    summary reports the weekly maxima (mR/h x 25000 / 60 / 100) against
    the weekly limits. The first `worker_positions` readings are operator
    positions, the rest are public.
    """
    workload = to_number(first_present(doc, "workload", default=BMD_WORKLOAD))
    ma = to_number(first_present(doc, "mA", "ma", default=BMD_CURRENT_MA))

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []
    maxima = {"worker": np.nan, "public": np.nan}

    for i, row in enumerate(as_rows(doc, "readings", "locations", "rows")):
        name = str(first_present(row, "location", "position", default=f"Position {i + 1}"))
        mr_hr = to_number(first_present(row, "mRPerHr", "mRperHr", "result", "value"))
        category = "worker" if i < int(worker_positions) else "public"
        limit = WORKER_LIMIT_MR_HR if category == "worker" else PUBLIC_LIMIT_MR_HR

        # blank and zero readings stay undetermined
        r = remark(mr_hr <= limit) if np.isfinite(mr_hr) and mr_hr > 0 else UNDETERMINED
        remarks.append(r)

        weekly = weekly_dose_mr(workload, mr_hr, ma)
        if np.isfinite(weekly) and not (weekly <= maxima[category]):
            maxima[category] = weekly

        table.append(
            {
                "Location": name,
                "Category": category.capitalize(),
                "mR/h": fmt(mr_hr, 3),
                "Limit (mR/h)": f"≤ {limit:g}",
                "mR/week": fmt(weekly, 3),
                "Remark": r,
            }
        )

    for category, limit in (("worker", WORKER_LIMIT_MR_WEEK), ("public", PUBLIC_LIMIT_MR_WEEK)):
        v = maxima[category]
        if np.isfinite(v):
            summary.append(
                SummaryEntry(
                    specified=f"Maximum ({category})",
                    measured=f"{fmt(v, 3)} mR/week",
                    tolerance=f"≤ {limit:g} mR/week",
                    remarks=_weekly_remark(v, limit),
                )
            )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=f"Worker ≤ {WORKER_LIMIT_MR_HR:g} mR/h; Public ≤ {PUBLIC_LIMIT_MR_HR:g} mR/h",
        extras={"max_worker_mr_week": maxima["worker"], "max_public_mr_week": maxima["public"]},
        summary=summary,
    )


# =============================================================================
# Lead apron
# =============================================================================
def lead_apron(
    doc: Mapping,
    *,
    key: str = "leadApron",
    title: str = "Lead Apron Attenuation",
) -> TestResult:
    neutral = to_number(first_present(doc, "neutral", "neutralDose", "withoutApron"))
    positions = doc.get("positions")
    if not isinstance(positions, list):
        positions = [doc.get(k) for k in ("position1", "position2", "position3")]
    vals = numbers(positions)

    _, min_reduction = read_tolerance(doc, default_value=LEAD_APRON_MIN_REDUCTION_PCT)

    avg = float(np.round(mean(vals), 4)) if vals.size else np.nan
    reduction = np.nan
    if np.isfinite(neutral) and neutral > 0 and np.isfinite(avg):
        reduction = float(np.round((neutral - avg) / neutral * 100.0, 2))

    r = remark(reduction >= min_reduction) if np.isfinite(reduction) else UNDETERMINED
    verdict = "Pass, Can use further" if r == PASS else r

    table = [
        {
            "Neutral Dose": fmt(neutral, 4),
            "Positional Doses": ", ".join(f"{v:g}" for v in vals) if vals.size else UNDETERMINED,
            "Average Dose": fmt(avg, 4),
            "Reduction (%)": fmt(reduction, 2),
            "Result": verdict,
        }
    ]
    summary = []
    if np.isfinite(reduction):
        summary.append(
            SummaryEntry(
                specified="Percentage reduction in dose",
                measured=f"{fmt(reduction, 2)} %",
                tolerance=f"≥ {min_reduction:g} %",
                remarks=r,
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=r,
        tolerance=f"≥ {min_reduction:g} %",
        extras={"average_dose": avg, "reduction_pct": reduction},
        summary=summary,
    )
