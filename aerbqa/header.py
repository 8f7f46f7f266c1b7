# aerbqa/header.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from aerbqa.values import is_blank

DEFAULT_NOTES: List[Dict[str, str]] = [
    {"slNo": "5.1", "text": "The Test Report relates only to the above item only."},
    {
        "slNo": "5.2",
        "text": "Publication or reproduction of this Certificate in any form other than by complete set of "
        "the whole report & in the language written, is not permitted without the written consent of the laboratory.",
    },
    {"slNo": "5.3", "text": "Corrections/erasing invalidates the Test Report."},
    {
        "slNo": "5.4",
        "text": "Referred standard for Testing: AERB Safety Code for Medical Diagnostic X-ray Equipment and Installations.",
    },
    {
        "slNo": "5.5",
        "text": "Any error in this Report should be brought to our knowledge within 30 days from the date of this report.",
    },
    {
        "slNo": "5.6",
        "text": "Results reported are valid at the time of and under the stated conditions of measurements.",
    },
    {"slNo": "5.7", "text": "Name, Address & Contact detail is provided by Customer."},
]

_NA_FIELDS = (
    "customerName",
    "address",
    "srfNumber",
    "testReportNumber",
    "make",
    "model",
    "slNumber",
    "testingProcedureNumber",
    "engineerNameRPId",
    "location",
)
_BLANK_FIELDS = ("srfDate", "issueDate", "testDate", "testDueDate", "temperature", "humidity")

TOOL_COLUMNS = ["nomenclature", "make", "model", "SrNo", "range", "calibrationCertificateNo", "calibrationValidTill"]


def format_date(value: Any) -> str:
    """dd/mm/yyyy; blank -> "-", unparseable text is returned as is."""
    if is_blank(value):
        return "-"
    dt_ = pd.to_datetime(value, errors="coerce", utc=False)
    if pd.isna(dt_):
        return str(value).strip()
    return pd.Timestamp(dt_).strftime("%d/%m/%Y")


def _or(value: Any, default: Any) -> Any:
    return default if is_blank(value) else value


def _tools(raw: Any) -> List[Dict[str, str]]:
    if not isinstance(raw, list):
        return []
    out = []
    for t in raw:
        if not isinstance(t, Mapping):
            continue
        out.append({c: "" if is_blank(t.get(c)) else str(t.get(c)).strip() for c in TOOL_COLUMNS})
    return out


def _notes(raw: Any) -> List[Dict[str, str]]:
    if not isinstance(raw, list) or not raw:
        return [dict(n) for n in DEFAULT_NOTES]
    out = []
    for i, n in enumerate(raw, start=1):
        if isinstance(n, Mapping):
            out.append({"slNo": str(n.get("slNo") or f"5.{i}"), "text": str(n.get("text") or "")})
        elif not is_blank(n):
            out.append({"slNo": f"5.{i}", "text": str(n)})
    return out or [dict(n) for n in DEFAULT_NOTES]


def normalize_header(data: Optional[Mapping], nomenclature: str = "N/A") -> Dict[str, Any]:
    """
    Report header with every field present.

    Text fields default to "N/A", category to "-", condition to "OK",
    nomenclature to the modality's and notes to the standard notes.
    Dates are kept raw here; format them with format_date().
    """
    data = data or {}
    out: Dict[str, Any] = {}
    for k in _NA_FIELDS:
        out[k] = str(_or(data.get(k), "N/A")).strip()
    for k in _BLANK_FIELDS:
        out[k] = _or(data.get(k), "")

    out["nomenclature"] = str(_or(data.get("nomenclature"), nomenclature)).strip()
    out["category"] = str(_or(data.get("category"), "-")).strip()
    out["condition"] = str(_or(data.get("condition"), "OK")).strip()
    out["toolsUsed"] = _tools(data.get("toolsUsed"))
    out["notes"] = _notes(data.get("notes"))
    return out


def tools_frame(header: Mapping) -> pd.DataFrame:
    tools = header.get("toolsUsed") or []
    df = pd.DataFrame(tools, columns=TOOL_COLUMNS)
    if not df.empty:
        df["calibrationValidTill"] = df["calibrationValidTill"].map(format_date)
    return df
