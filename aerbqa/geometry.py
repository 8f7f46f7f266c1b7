# aerbqa/geometry.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from aerbqa.results import SummaryEntry, TestResult, prefer_stored_remark
from aerbqa.stats import mean
from aerbqa.tolerance import (
    BAND_EPS,
    combine_remarks,
    compare,
    normalize_operator,
    operator_label,
    operator_symbol,
    read_operator_tolerance,
    read_tolerance,
    remark,
    tolerance_label,
    within_signed_band,
    within_zero_band,
)
from aerbqa.values import (
    FAIL,
    PASS,
    UNDETERMINED,
    as_rows,
    first_present,
    fmt,
    fmt_plain,
    is_blank,
    to_number,
)

# =============================================================================
# Constants
# =============================================================================
LOW_CONTRAST_LIMIT_MM = 5.0
LOW_CONTRAST_EXPECTED_MM = 2.5

AEC_LIMIT = 5.0
NON_AEC_LIMIT = 10.0


def _single_or_rows(doc: Mapping, *row_keys: str) -> List[Mapping]:
    rows = as_rows(doc, *row_keys)
    return rows if rows else [doc]


# =============================================================================
# Radiation profile width (CT)
# =============================================================================
def profile_width_tolerance(applied_mm: Any) -> Tuple[str, float]:
    """
    (rule, tolerance in mm) for a nominal slice width:
      < 1.0 mm      -> ±0.5 mm
      1.0 - 2.0 mm  -> ±50 % of nominal
      > 2.0 mm      -> ±1.0 mm
    """
    a = to_number(applied_mm)
    if not np.isfinite(a):
        return ("", np.nan)
    if a < 1.0:
        return ("a. Less than 1.0 mm", 0.5)
    if a <= 2.0:
        return ("b. 1.0 mm to 2.0 mm", a * 0.5)
    return ("c. Above 2.0 mm", 1.0)


def radiation_profile_width(
    doc: Mapping,
    *,
    key: str = "radiationProfileWidth",
    title: str = "Radiation Profile Width / Slice Thickness",
) -> TestResult:
    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "rows", "table2"):
        applied = to_number(first_present(row, "applied", "appliedSlice", "nominal"))
        measured = to_number(first_present(row, "measured", "measuredSlice"))
        if not np.isfinite(applied) and not np.isfinite(measured):
            continue

        rule, tol = profile_width_tolerance(applied)
        ok = None
        if np.isfinite(measured) and np.isfinite(tol):
            ok = applied - tol - BAND_EPS <= measured <= applied + tol + BAND_EPS
        r = remark(ok)
        remarks.append(r)

        tol_text = f"±{tol:.3f} mm" if np.isfinite(tol) else UNDETERMINED
        table.append(
            {
                "Applied (mm)": fmt(applied, 2),
                "Measured (mm)": fmt(measured, 2),
                "Criterion": rule or UNDETERMINED,
                "Tolerance": tol_text,
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{fmt(applied, 2)} mm",
                measured=f"{fmt(measured, 2)} mm",
                tolerance=tol_text,
                remarks=prefer_stored_remark(first_present(row, "remarks", "remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance="<1 mm: ±0.5 mm; 1-2 mm: ±50%; >2 mm: ±1.0 mm",
        summary=summary,
    )


# =============================================================================
# Alignment of table / gantry, gantry tilt
# =============================================================================
def signed_alignment(
    doc: Mapping,
    *,
    default_value: float = 2.0,
    unit: str = "mm",
    key: str = "alignmentOfTableGantry",
    title: str = "Alignment of Table/Gantry",
) -> TestResult:
    """Signed result against a band around zero ("±", "+" or "-")."""
    sign, tol = read_tolerance(doc, default_value=default_value)
    tol_text = tolerance_label(sign, tol, unit)

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in _single_or_rows(doc, "rows", "measurements"):
        label = str(first_present(row, "parameter", "label", "angle", default=title))
        result = to_number(first_present(row, "result", "measured", "deviation"))
        if not np.isfinite(result):
            continue

        r = remark(within_zero_band(result, sign, tol))
        remarks.append(r)
        table.append({"Parameter": label, f"Result ({unit})": fmt(result, 2), "Tolerance": tol_text, "Remark": r})
        summary.append(
            SummaryEntry(
                specified=label,
                measured=f"{fmt(result, 2)} {unit}",
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
        summary=summary,
    )


# =============================================================================
# Central beam alignment
# =============================================================================
def central_beam_alignment(
    doc: Mapping,
    *,
    key: str = "centralBeamAlignment",
    title: str = "Central Beam Alignment",
) -> TestResult:
    op, tol = read_operator_tolerance(doc, default_operator="<=", default_value=1.5)
    tol_text = operator_label(op, tol, "°")

    tilt = to_number(first_present(doc, "observedTilt", "tilt", "observed", "result"))
    r = remark(compare(tilt, op, tol, eps=0.01))

    table = []
    summary = []
    if np.isfinite(tilt):
        table.append({"Observed Tilt (°)": fmt(tilt, 2), "Tolerance": tol_text, "Remark": r})
        summary.append(
            SummaryEntry(
                specified="Beam alignment tilt",
                measured=f"{fmt(tilt, 2)}°",
                tolerance=tol_text,
                remarks=prefer_stored_remark(doc.get("remark"), r),
            )
        )

    return TestResult(
        key=key, title=title, rows=pd.DataFrame(table), remark=r, tolerance=tol_text, summary=summary
    )


# =============================================================================
# Congruence of radiation and optical field
# =============================================================================
def congruence(
    doc: Mapping,
    *,
    key: str = "congruence",
    title: str = "Congruence of Radiation & Optical Field",
) -> TestResult:
    """
    Per edge: %FED = (observed shift + edge shift) / FCD x 100,
    FCD defaulting to 100 cm, passing when %FED <= tolerance (2 %).
    """
    fcd = to_number(first_present(doc, "fcd", "fcdCm"))
    techniques = as_rows(doc, "techniqueRows")
    if not np.isfinite(fcd) and techniques:
        fcd = to_number(techniques[0].get("fcd"))
    if not np.isfinite(fcd) or fcd <= 0:
        fcd = 100.0
    _, tol = read_tolerance(doc, default_value=2.0)
    tol_text = f"≤ {tol:g}% of FCD"

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "congruenceRows", "congruenceMeasurements", "rows", "measurements"):
        edge = str(first_present(row, "dimension", "edge", "direction", default=""))
        observed = to_number(first_present(row, "observedShift", "observed"))
        shift = to_number(first_present(row, "edgeShift", "shift", default=0))
        if not np.isfinite(observed):
            continue

        fed = float(np.round((observed + (shift if np.isfinite(shift) else 0.0)) / fcd * 100.0, 2))
        r = remark(fed <= tol)
        remarks.append(r)
        table.append(
            {
                "Edge": edge or UNDETERMINED,
                "Observed Shift (cm)": fmt(observed, 2),
                "Edge Shift (cm)": fmt(shift, 2),
                "%FED": fmt(fed, 2),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=edge or UNDETERMINED,
                measured=f"{fmt(fed, 2)} %",
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
        extras={"fcd_cm": fcd},
        summary=summary,
        shared_tolerance=True,
    )


# =============================================================================
# Effective focal spot
# =============================================================================
def focal_spot_multiplier(avg_stated_mm: float) -> float:
    if avg_stated_mm < 0.8:
        return 0.5
    if avg_stated_mm > 1.5:
        return 0.3
    return 0.4


def effective_focal_spot(
    doc: Mapping,
    *,
    key: str = "effectiveFocalSpot",
    title: str = "Effective Focal Spot Measurement",
) -> TestResult:
    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in _single_or_rows(doc, "focalSpots", "rows"):
        focus = str(first_present(row, "focusType", "focus", default="Focus"))
        stated = mean([to_number(row.get("statedWidth")), to_number(row.get("statedHeight"))])
        measured = mean([to_number(row.get("measuredWidth")), to_number(row.get("measuredHeight"))])
        if not np.isfinite(stated) and not np.isfinite(measured):
            continue

        allowed = np.nan
        ok = None
        if np.isfinite(stated):
            allowed = stated * (1.0 + focal_spot_multiplier(stated))
            if np.isfinite(measured):
                ok = measured <= allowed
        r = remark(ok)
        remarks.append(r)

        table.append(
            {
                "Focus": focus,
                "Stated (mm)": f"{fmt_plain(row.get('statedWidth'))} x {fmt_plain(row.get('statedHeight'))}",
                "Measured (mm)": f"{fmt_plain(row.get('measuredWidth'))} x {fmt_plain(row.get('measuredHeight'))}",
                "Allowed (mm)": fmt(allowed, 2),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{focus}: {fmt(stated, 2)} mm",
                measured=f"{fmt(measured, 2)} mm",
                tolerance=f"≤ {fmt(allowed, 2)} mm",
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    if remarks and all(r == PASS for r in remarks):
        overall = "PASS"
    elif FAIL in remarks:
        overall = "FAIL"
    else:
        overall = "PENDING"

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks) if overall != "PENDING" else UNDETERMINED,
        tolerance="f < 0.8 mm: +0.5f; 0.8-1.5 mm: +0.4f; > 1.5 mm: +0.3f",
        extras={"overall": overall},
        summary=summary,
    )


# =============================================================================
# High / low contrast resolution
# =============================================================================
_RX_TOL_TEXT = re.compile(r"^\s*(±|\+/-|\+-)?\s*([0-9]*\.?[0-9]+)")


def parse_tolerance_text(text: Any) -> Tuple[bool, float]:
    """"±10%" -> (True, 10.0); "10" -> (False, 10.0); junk -> (False, nan)."""
    if text is None:
        return (False, np.nan)
    m = _RX_TOL_TEXT.match(str(text))
    if not m:
        return (False, np.nan)
    return (m.group(1) is not None, float(m.group(2)))


def high_contrast_resolution(
    doc: Mapping,
    *,
    key: str = "highContrastResolution",
    title: str = "High Contrast Resolution",
) -> TestResult:
    measured = to_number(first_present(doc, "measuredLpPerMm", "measured", "observedLpPerMm"))
    standard = to_number(first_present(doc, "recommendedStandard", "standard", "expected"))
    symmetric, amt = parse_tolerance_text(first_present(doc, "tolerance", "toleranceValue"))

    ok: Optional[bool] = None
    lower = upper = np.nan
    if np.isfinite(standard) and np.isfinite(amt):
        lower = standard - amt if symmetric else standard
        upper = standard + amt
        if np.isfinite(measured):
            ok = lower <= measured <= upper
    r = remark(ok)

    tol_text = f"{fmt(lower, 2)} - {fmt(upper, 2)} lp/mm" if np.isfinite(lower) else UNDETERMINED
    table = []
    summary = []
    if np.isfinite(measured):
        table.append(
            {
                "Measured (lp/mm)": fmt(measured, 2),
                "Recommended (lp/mm)": fmt(standard, 2),
                "Acceptable Range": tol_text,
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{fmt(standard, 2)} lp/mm",
                measured=f"{fmt(measured, 2)} lp/mm",
                tolerance=tol_text,
                remarks=prefer_stored_remark(doc.get("remark"), r),
            )
        )

    return TestResult(
        key=key, title=title, rows=pd.DataFrame(table), remark=r, tolerance=tol_text, summary=summary
    )


def low_contrast_resolution(
    doc: Mapping,
    *,
    key: str = "lowContrastResolution",
    title: str = "Low Contrast Resolution",
) -> TestResult:
    """Smallest visible hole at 1 % contrast; <= 5.0 mm passes, <= 2.5 mm is the expected level."""
    observed = to_number(first_present(doc, "observedSize", "holeSize", "observed", "smallestHoleSize"))
    contrast = fmt_plain(first_present(doc, "contrastLevel", "contrast"), fallback="1%")

    ok = observed <= LOW_CONTRAST_LIMIT_MM if np.isfinite(observed) and observed > 0 else None
    r = remark(ok)
    expected_met = bool(ok) and observed <= LOW_CONTRAST_EXPECTED_MM
    tol_text = f"≤ {LOW_CONTRAST_LIMIT_MM:g} mm at {contrast} contrast"

    table = []
    summary = []
    if ok is not None:
        table.append(
            {
                "Observed Size (mm)": fmt(observed, 2),
                "Contrast": contrast,
                "Expected Level Met": "Yes" if expected_met else "No",
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{contrast} contrast",
                measured=f"{fmt(observed, 2)} mm",
                tolerance=tol_text,
                remarks=prefer_stored_remark(doc.get("remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=r,
        tolerance=tol_text,
        extras={"expected_met": expected_met, "complete": ok is not None},
        summary=summary,
    )


# =============================================================================
# Exposure rate at table top
# =============================================================================
def exposure_rate_table_top(
    doc: Mapping,
    *,
    key: str = "exposureRateTableTop",
    title: str = "Exposure Rate at Table Top",
) -> TestResult:
    aec_limit = to_number(first_present(doc, "aecTolerance", "aecLimit", default=AEC_LIMIT))
    non_aec_limit = to_number(first_present(doc, "nonAecTolerance", "nonAecLimit", default=NON_AEC_LIMIT))

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "rows", "exposureRateRows"):
        exposure = to_number(first_present(row, "exposure", "exposureRate", "result"))
        if not np.isfinite(exposure):
            continue

        # the stated mode only labels the row; every row is judged on the non-AEC limit
        stated_mode = str(row.get("mode") or "").lower()
        if "manual" in stated_mode or "non" in stated_mode:
            mode = "Manual Mode"
        elif "aec" in stated_mode:
            mode = "AEC Mode"
        else:
            mode = "AEC Mode" if exposure <= aec_limit else "Manual Mode"
        limit = non_aec_limit

        r = remark(exposure <= limit)
        remarks.append(r)
        table.append(
            {
                "Distance (cm)": fmt_plain(row.get("distance")),
                "kV": fmt_plain(first_present(row, "appliedKv", "kv")),
                "mA": fmt_plain(first_present(row, "appliedMa", "ma")),
                "Exposure (cGy/min)": fmt(exposure, 3),
                "Mode": mode,
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=mode,
                measured=f"{fmt(exposure, 3)} cGy/min",
                tolerance=f"≤ {limit:g} cGy/min",
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        tolerance=f"AEC ≤ {aec_limit:g}; Manual ≤ {non_aec_limit:g} cGy/min",
        summary=summary,
    )


# =============================================================================
# Table position (CT)
# =============================================================================
def table_position(
    doc: Mapping,
    *,
    key: str = "tablePosition",
    title: str = "Table Position",
) -> TestResult:
    """Each table increment against its expected position, ±2 mm by default."""
    sign, tol = read_tolerance(doc, default_value=2.0)
    tol_text = tolerance_label(sign, tol, "mm")

    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "tableIncrementation", "rows"):
        expected = to_number(row.get("expected"))
        measured = to_number(row.get("measured"))
        if not np.isfinite(expected) and not np.isfinite(measured):
            continue

        r = remark(within_signed_band(measured, expected, sign, tol))
        remarks.append(r)
        table.append(
            {
                "Table Position": fmt_plain(row.get("tablePosition")),
                "Expected (mm)": fmt(expected, 1),
                "Measured (mm)": fmt(measured, 1),
                "Deviation (mm)": fmt(measured - expected, 1),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=f"{fmt(expected, 1)} mm",
                measured=f"{fmt(measured, 1)} mm",
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
        extras={
            "initial_position": fmt_plain(doc.get("initialTablePosition")),
            "load_on_couch": fmt_plain(doc.get("loadOnCouch")),
        },
        summary=summary,
        shared_tolerance=True,
    )


# =============================================================================
# Alignment checklist (OBI)
# =============================================================================
def alignment_checklist(
    doc: Mapping,
    *,
    key: str = "alignmentTest",
    title: str = "Alignment Test",
) -> TestResult:
    """
    Named checks with an operator limit ("≤ 1 mm"). Rows carrying a
    measured value are judged against it; the rest stay undetermined.
    """
    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in as_rows(doc, "testRows", "rows"):
        name = str(first_present(row, "testName", "parameter", default="")).strip()
        if not name:
            continue

        op = normalize_operator(first_present(row, "sign", "operator"))
        limit_text = fmt_plain(row.get("value"))
        measured = to_number(first_present(row, "measured", "result"))

        r = prefer_stored_remark(row.get("remark"), remark(compare(measured, op, row.get("value"))))
        remarks.append(r)
        tol_text = f"{operator_symbol(op)} {limit_text}"
        table.append(
            {
                "Test": name,
                "Tolerance": tol_text,
                "Measured": fmt_plain(first_present(row, "measured", "result")),
                "Remark": r,
            }
        )
        summary.append(
            SummaryEntry(
                specified=name,
                measured=fmt_plain(first_present(row, "measured", "result")),
                tolerance=tol_text,
                remarks=r,
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=combine_remarks(remarks),
        summary=summary,
    )


# =============================================================================
# Imaging phantom (mammography)
# =============================================================================
# minimum visible objects per phantom group
PHANTOM_DEFAULTS = {
    "Fibers": (">=", 5.0),
    "Microcalcifications": (">=", 5.0),
    "Masses": (">=", 4.0),
}
_PHANTOM_LEGACY = (("fibers", "Fibers"), ("specks", "Microcalcifications"), ("masses", "Masses"))


def _phantom_rows(doc: Mapping) -> List[Mapping]:
    rows = as_rows(doc, "rows", "phantomRows")
    if rows:
        return rows
    out = []
    for k, name in _PHANTOM_LEGACY:
        group = doc.get(k)
        if isinstance(group, Mapping):
            out.append({"name": name, "visibleCount": first_present(group, "visible", "visibleCount")})
    return out


def imaging_phantom(
    doc: Mapping,
    *,
    key: str = "imagingPhantom",
    title: str = "Imaging Performance (Phantom)",
) -> TestResult:
    table: List[Dict[str, Any]] = []
    summary: List[SummaryEntry] = []
    remarks: List[str] = []

    for row in _phantom_rows(doc):
        name = str(first_present(row, "name", "group", default="")).strip()
        visible = to_number(first_present(row, "visibleCount", "visible"))
        if not name or not np.isfinite(visible):
            continue

        default_op, default_value = PHANTOM_DEFAULTS.get(name, (">=", np.nan))
        op, limit = read_operator_tolerance(row, default_operator=default_op, default_value=default_value)
        r = remark(compare(visible, op, limit))
        remarks.append(r)
        tol_text = operator_label(op, limit)

        table.append({"Group": name, "Visible": fmt_plain(visible), "Tolerance": tol_text, "Remark": r})
        summary.append(
            SummaryEntry(
                specified=f"{name} visible",
                measured=fmt_plain(visible),
                tolerance=tol_text,
                remarks=prefer_stored_remark(row.get("remark"), r),
            )
        )

    overall = combine_remarks(remarks)
    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=prefer_stored_remark(doc.get("remark"), overall) if remarks else overall,
        summary=summary,
    )


# =============================================================================
# Equipment settings (mammography)
# =============================================================================
EQUIPMENT_FIELDS = (
    ("appliedCurrent", "Applied Current (mA)"),
    ("appliedVoltage", "Applied Voltage (kV)"),
    ("exposureTime", "Exposure Time (s)"),
    ("workload", "Workload (mA min/week)"),
)


def equipment_setting(
    doc: Mapping,
    *,
    key: str = "equipmentSetting",
    title: str = "Equipment Settings Verification",
) -> TestResult:
    """Recorded exposure settings; the verified flag decides the remark."""
    table = [
        {"Parameter": label, "Value": fmt_plain(doc.get(field))}
        for field, label in EQUIPMENT_FIELDS
        if not is_blank(doc.get(field))
    ]

    verified = doc.get("verified")
    if isinstance(verified, str):
        verified = {"true": True, "yes": True, "false": False, "no": False}.get(verified.strip().lower())
    r = remark(verified if isinstance(verified, bool) else None)

    summary = []
    if isinstance(verified, bool):
        summary.append(
            SummaryEntry(
                specified="Functional",
                measured="Verified" if verified else "Not Verified",
                tolerance="All functional",
                remarks=r,
            )
        )

    return TestResult(
        key=key,
        title=title,
        rows=pd.DataFrame(table),
        remark=r,
        tolerance="All functional",
        summary=summary,
    )
