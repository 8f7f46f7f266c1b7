# aerbqa/export.py
from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import Set

import pandas as pd

from aerbqa.api import ServiceReport
from aerbqa.header import format_date, tools_frame
from aerbqa.summary import build_summary, display_summary, split_mechanical

logger = logging.getLogger(__name__)

_RX_SHEET_BAD = re.compile(r"[\[\]:*?/\\]")
_SHEET_MAX = 31


def _sheet_name(title: str, used: Set[str]) -> str:
    """Excel-safe, unique sheet name of at most 31 characters."""
    base = _RX_SHEET_BAD.sub(" ", str(title or "Sheet")).strip() or "Sheet"
    base = base[:_SHEET_MAX]
    name = base
    n = 1
    while name.lower() in used:
        n += 1
        suffix = f" ({n})"
        name = base[: _SHEET_MAX - len(suffix)] + suffix
    used.add(name.lower())
    return name


def _header_frame(report: ServiceReport) -> pd.DataFrame:
    h = report.header
    rows = [
        ("Service ID", report.service_id),
        ("Modality", report.modality.name),
        ("Customer", h.get("customerName")),
        ("Address", h.get("address")),
        ("SRF No.", h.get("srfNumber")),
        ("SRF Date", format_date(h.get("srfDate"))),
        ("Test Report No.", h.get("testReportNumber")),
        ("Issue Date", format_date(h.get("issueDate"))),
        ("Nomenclature", h.get("nomenclature")),
        ("Make", h.get("make")),
        ("Model", h.get("model")),
        ("Serial No.", h.get("slNumber")),
        ("Category", h.get("category")),
        ("Condition", h.get("condition")),
        ("Testing Procedure No.", h.get("testingProcedureNumber")),
        ("Engineer / RP ID", h.get("engineerNameRPId")),
        ("Test Date", format_date(h.get("testDate"))),
        ("Due Date", format_date(h.get("testDueDate"))),
        ("Location", h.get("location")),
        ("Temperature", h.get("temperature") or "-"),
        ("Humidity", h.get("humidity") or "-"),
    ]
    return pd.DataFrame(rows, columns=["Field", "Value"])


def export_report_workbook(report: ServiceReport) -> bytes:
    """
    Workbook of the evaluated report: Header, Tools, Summary (plus a
    Mechanical Summary for CT) and one sheet per test with its derived
    rows. Returned as bytes.
    """
    buf = BytesIO()
    used: Set[str] = set()

    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        _header_frame(report).to_excel(writer, sheet_name=_sheet_name("Header", used), index=False)
        tools_frame(report.header).to_excel(writer, sheet_name=_sheet_name("Tools", used), index=False)
        main_results, mechanical_results = split_mechanical(report.results)
        display_summary(build_summary(main_results)).to_excel(
            writer, sheet_name=_sheet_name("Summary", used), index=False
        )
        if mechanical_results:
            display_summary(build_summary(mechanical_results)).to_excel(
                writer, sheet_name=_sheet_name("Mechanical Summary", used), index=False
            )

        for res in report.results:
            name = _sheet_name(res.title, used)
            if res.rows is not None and not res.rows.empty:
                df = res.rows.copy()
            else:
                df = pd.DataFrame({"Note": [res.error or "No measurements recorded."]})
            df.to_excel(writer, sheet_name=name, index=False)

    logger.info("Workbook built for service %s (%d test sheets)", report.service_id, len(report.results))
    return buf.getvalue()
