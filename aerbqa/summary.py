# aerbqa/summary.py
from __future__ import annotations

from typing import Iterable, List, Tuple

import pandas as pd

from aerbqa.results import TestResult
from aerbqa.values import FAIL, PASS

SUMMARY_COLUMNS = [
    "Sr. No.",
    "Parameter",
    "Specified",
    "Measured",
    "Tolerance",
    "Remarks",
    "row_span",
    "tolerance_span",
    "first_row",
]

# CT mechanical checks print in their own summary table
MECHANICAL_KEYS = ("alignmentOfTableGantry", "gantryTilt", "tablePosition")


def split_mechanical(results: Iterable[TestResult]) -> Tuple[List[TestResult], List[TestResult]]:
    """(QA results, mechanical results), each in report order."""
    main: List[TestResult] = []
    mechanical: List[TestResult] = []
    for res in results:
        (mechanical if res.key in MECHANICAL_KEYS else main).append(res)
    return main, mechanical


def build_summary(results: Iterable[TestResult]) -> pd.DataFrame:
    """
    "Summary of QA test results" rows.

    Sr. No. and Parameter are set on the first row of each test with
    row_span covering its rows. Tests with a shared tolerance print it on
    the first row only (tolerance_span = number of rows, 0 elsewhere).
    Tests without summary entries are skipped and do not take a number.
    """
    rows: List[dict] = []
    sr_no = 1

    for res in results:
        entries = list(res.summary or [])
        if not entries:
            continue

        n = len(entries)
        for idx, e in enumerate(entries):
            first = idx == 0
            if res.shared_tolerance:
                tolerance = entries[0].tolerance if first else None
                tol_span = n if first else 0
            else:
                tolerance = e.tolerance
                tol_span = 0

            rows.append(
                {
                    "Sr. No.": sr_no if first else None,
                    "Parameter": res.title if first else None,
                    "Specified": e.specified,
                    "Measured": e.measured,
                    "Tolerance": tolerance,
                    "Remarks": e.remarks,
                    "row_span": n if first else 0,
                    "tolerance_span": tol_span,
                    "first_row": first,
                }
            )
        sr_no += 1

    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def display_summary(summary_df: pd.DataFrame) -> pd.DataFrame:
    """Summary without layout columns, merged cells written out as blanks."""
    if summary_df is None or summary_df.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS[:6])
    out = summary_df[SUMMARY_COLUMNS[:6]].copy()
    out["Sr. No."] = out["Sr. No."].map(lambda v: "" if pd.isna(v) else str(int(v)))
    for c in ("Parameter", "Tolerance"):
        out[c] = out[c].fillna("")
    return out


def overall_status(results: Iterable[TestResult]) -> str:
    remarks = [r.remark for r in results]
    if FAIL in remarks:
        return "FAIL"
    if PASS in remarks:
        return "PASS"
    return "INCOMPLETE"


def count_remarks(results: Iterable[TestResult]) -> dict:
    counts = {"PASS": 0, "FAIL": 0, "INCOMPLETE": 0}
    for r in results:
        counts[r.status] += 1
    return counts
