# aerbqa/report.py
from __future__ import annotations

import logging
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, List, Optional
from xml.sax.saxutils import escape

import numpy as np
import pandas as pd
from reportlab.lib import colors
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    CondPageBreak,
    Image,
    KeepTogether,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from aerbqa.api import ServiceReport
from aerbqa.header import format_date, tools_frame
from aerbqa.plots import fig_to_png_bytes, plots_for
from aerbqa.summary import build_summary, overall_status, split_mechanical

logger = logging.getLogger(__name__)

# =============================================================================
# Branding
# =============================================================================
BRAND = {
    "navy": HexColor("#1f2a44"),
    "gold": HexColor("#C99700"),
    "bg": HexColor("#F5F7FA"),
    "panel": HexColor("#FFFFFF"),
    "border": HexColor("#E5E7EB"),
    "text": HexColor("#111827"),
    "muted": HexColor("#6B7280"),
    "success": HexColor("#0F766E"),
    "warn": HexColor("#B45309"),
    "danger": HexColor("#B91C1C"),
}


def _status_color(status: str):
    s = (status or "").upper().strip()
    if s == "PASS":
        return BRAND["success"]
    if s in ("INCOMPLETE", "-", "PENDING"):
        return BRAND["warn"]
    if s == "FAIL":
        return BRAND["danger"]
    return BRAND["muted"]


def _rl_color_to_hex(c: HexColor) -> str:
    hv = c.hexval()
    if isinstance(hv, str) and hv.startswith("0x") and len(hv) == 8:
        return "#" + hv[2:]
    return "#000000"


def _safe_str(x: Any, default: str = "N/A") -> str:
    if x is None:
        return default
    if isinstance(x, float) and np.isnan(x):
        return default
    s = str(x).strip()
    return s if s else default


# Helvetica (WinAnsi) has no glyphs for these
_PDF_GLYPHS = {"≤": "<=", "≥": ">=", "–": "-"}


def _pdf_text(x: Any, default: str = "N/A") -> str:
    s = _safe_str(x, default)
    for k, v in _PDF_GLYPHS.items():
        s = s.replace(k, v)
    return escape(s)


# =============================================================================
# PDF layout helpers
# =============================================================================
def _draw_header_footer(
    canvas,
    doc,
    *,
    title: str,
    subtitle: str,
    status: str,
    left_note: str,
    logo_path: Optional[Path] = None,
) -> None:
    canvas.saveState()
    page_w, page_h = A4

    canvas.setFillColor(BRAND["navy"])
    canvas.rect(0, page_h - 0.85 * inch, page_w, 0.85 * inch, stroke=0, fill=1)

    canvas.setFillColor(BRAND["gold"])
    canvas.rect(0, page_h - 0.85 * inch, page_w, 0.06 * inch, stroke=0, fill=1)

    x_left = 0.6 * inch
    if logo_path is not None and Path(logo_path).exists():
        logo_w = 0.55 * inch
        logo_h = 0.55 * inch
        canvas.drawImage(str(logo_path), x_left, page_h - 0.78 * inch, width=logo_w, height=logo_h, mask="auto")
        x_left += 0.65 * inch

    canvas.setFillColor(colors.white)
    canvas.setFont("Helvetica-Bold", 14)
    canvas.drawString(x_left, page_h - 0.52 * inch, title)

    canvas.setFont("Helvetica", 9.5)
    canvas.setFillColor(HexColor("#E5E7EB"))
    canvas.drawString(x_left, page_h - 0.70 * inch, subtitle)

    badge_w = 1.35 * inch
    badge_h = 0.34 * inch
    x0 = page_w - 0.6 * inch - badge_w
    y0 = page_h - 0.62 * inch
    canvas.setFillColor(_status_color(status))
    canvas.roundRect(x0, y0, badge_w, badge_h, 8, stroke=0, fill=1)

    canvas.setFillColor(colors.white)
    canvas.setFont("Helvetica-Bold", 10)
    canvas.drawCentredString(x0 + badge_w / 2, y0 + 0.11 * inch, (status or "INCOMPLETE").upper())

    canvas.setFillColor(BRAND["muted"])
    canvas.setFont("Helvetica", 8.5)
    canvas.drawString(0.6 * inch, 0.5 * inch, left_note)
    canvas.drawRightString(page_w - 0.6 * inch, 0.5 * inch, f"Page {doc.page}")

    canvas.restoreState()


def _table_style_key_value() -> TableStyle:
    return TableStyle(
        [
            ("BACKGROUND", (0, 0), (-1, -1), BRAND["panel"]),
            ("BACKGROUND", (0, 0), (0, -1), HexColor("#F3F4F6")),
            ("BACKGROUND", (2, 0), (2, -1), HexColor("#F3F4F6")),
            ("TEXTCOLOR", (0, 0), (-1, -1), BRAND["text"]),
            ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
            ("FONTSIZE", (0, 0), (-1, -1), 9.0),
            ("LINEBELOW", (0, 0), (-1, -1), 0.25, BRAND["border"]),
            ("BOX", (0, 0), (-1, -1), 0.8, BRAND["border"]),
            ("LEFTPADDING", (0, 0), (-1, -1), 6),
            ("RIGHTPADDING", (0, 0), (-1, -1), 6),
            ("TOPPADDING", (0, 0), (-1, -1), 4),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]
    )


def _table_style_summary(data: List[list], spans: List[tuple]) -> TableStyle:
    """Summary table: merged Sr. No./Parameter/Tolerance cells, coloured remarks."""
    style_cmds = [
        ("BACKGROUND", (0, 0), (-1, 0), HexColor("#EEF2F7")),
        ("TEXTCOLOR", (0, 0), (-1, 0), BRAND["text"]),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTNAME", (0, 1), (-1, -1), "Helvetica"),
        ("FONTSIZE", (0, 0), (-1, -1), 8.5),
        ("ALIGN", (2, 1), (-1, -1), "CENTER"),
        ("ALIGN", (0, 0), (0, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("BOX", (0, 0), (-1, -1), 0.8, BRAND["border"]),
        ("INNERGRID", (0, 0), (-1, -1), 0.25, BRAND["border"]),
        ("LEFTPADDING", (0, 0), (-1, -1), 5),
        ("RIGHTPADDING", (0, 0), (-1, -1), 5),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]
    for (c0, r0), (c1, r1) in spans:
        style_cmds.append(("SPAN", (c0, r0), (c1, r1)))

    status_col = len(data[0]) - 1
    for r in range(1, len(data)):
        s = str(data[r][status_col]).upper()
        style_cmds.append(("TEXTCOLOR", (status_col, r), (status_col, r), _status_color(s)))
        style_cmds.append(("FONTNAME", (status_col, r), (status_col, r), "Helvetica-Bold"))

    return TableStyle(style_cmds)


_STATUS_HEADERS = ("Remark", "Result")


def _table_style_compact(data: Optional[List[list]] = None) -> TableStyle:
    cmds = [
        ("BACKGROUND", (0, 0), (-1, 0), HexColor("#EEF2F7")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTNAME", (0, 1), (-1, -1), "Helvetica"),
        ("FONTSIZE", (0, 0), (-1, -1), 7.8),
        ("TEXTCOLOR", (0, 0), (-1, -1), BRAND["text"]),
        ("BOX", (0, 0), (-1, -1), 0.8, BRAND["border"]),
        ("INNERGRID", (0, 0), (-1, -1), 0.25, BRAND["border"]),
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("LEFTPADDING", (0, 0), (-1, -1), 3),
        ("RIGHTPADDING", (0, 0), (-1, -1), 3),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]
    if data and data[0] and str(data[0][-1]) in _STATUS_HEADERS:
        status_col = len(data[0]) - 1
        for r in range(1, len(data)):
            s = str(data[r][status_col]).upper()
            s = "PASS" if s.startswith("PASS") else s
            cmds.append(("TEXTCOLOR", (status_col, r), (status_col, r), _status_color(s)))
            cmds.append(("FONTNAME", (status_col, r), (status_col, r), "Helvetica-Bold"))
    return TableStyle(cmds)


def _detail_table_data(rows: pd.DataFrame, cell) -> List[list]:
    """Wrapped cells; the Remark/Result column stays plain text so its TEXTCOLOR applies."""
    df = rows.astype(str)
    header = list(df.columns)
    status_col = len(header) - 1 if header and header[-1] in _STATUS_HEADERS else None

    data: List[list] = [header]
    for values in df.values.tolist():
        data.append([v if i == status_col else cell(v) for i, v in enumerate(values)])
    return data


def _summary_table_data(summary_df: pd.DataFrame, cell) -> tuple:
    """Table rows for the summary plus the SPAN commands of merged cells."""
    header = ["Sr. No.", "Parameters Used", "Specified", "Measured", "Tolerance", "Remarks"]
    data: List[list] = [header]
    spans: List[tuple] = []

    for i, r in enumerate(summary_df.itertuples(index=False), start=1):
        first = bool(r.first_row)
        sr = "" if pd.isna(r[0]) else str(int(r[0]))
        data.append(
            [
                sr,
                cell(r.Parameter if first else ""),
                cell(r.Specified),
                cell(r.Measured),
                cell("" if r.Tolerance is None or (isinstance(r.Tolerance, float) and np.isnan(r.Tolerance)) else r.Tolerance),
                r.Remarks,
            ]
        )
        if first and int(r.row_span) > 1:
            spans.append(((0, i), (0, i + int(r.row_span) - 1)))
            spans.append(((1, i), (1, i + int(r.row_span) - 1)))
        if int(r.tolerance_span) > 1:
            spans.append(((4, i), (4, i + int(r.tolerance_span) - 1)))

    return data, spans


# =============================================================================
# Public API
# =============================================================================
def generate_pdf_service_report_bytes(
    report: ServiceReport,
    report_title: Optional[str] = None,
    company_name: str = "Radiation Safety QA Services",
    reviewer: Optional[str] = None,
    include_charts: bool = True,
    logo_path: Optional[Path] = None,
) -> bytes:
    """
    QA test report for one service visit.

    Sections:
      - customer / equipment details (header fields, dd/mm/yyyy dates)
      - tools used
      - summary of QA test results (merged cells as on the printed form),
        with CT mechanical checks in a table of their own
      - one detail table per evaluated test, with charts for linearity
        and reproducibility
      - notes

    Returns the PDF as bytes; nothing is written to disk.
    """
    header = report.header
    results = report.results
    status = overall_status(results)
    main_results, mechanical_results = split_mechanical(results)
    summary_df = build_summary(main_results)
    mechanical_df = build_summary(mechanical_results)
    if report_title is None:
        report_title = f"QA Test Report - {header.get('nomenclature') or report.modality.nomenclature}"

    base_styles = getSampleStyleSheet()
    styleTitle = ParagraphStyle(
        "TitleBrand",
        parent=base_styles["Title"],
        fontName="Helvetica-Bold",
        fontSize=17,
        textColor=BRAND["text"],
        spaceAfter=8,
    )
    styleH = ParagraphStyle(
        "HBrand",
        parent=base_styles["Heading2"],
        fontName="Helvetica-Bold",
        fontSize=12,
        textColor=BRAND["text"],
        spaceBefore=10,
        spaceAfter=6,
    )
    styleN = ParagraphStyle(
        "NBrand",
        parent=base_styles["Normal"],
        fontName="Helvetica",
        fontSize=9.2,
        leading=11.5,
        textColor=BRAND["text"],
    )
    styleMuted = ParagraphStyle("Muted", parent=styleN, textColor=BRAND["muted"])
    styleKey = ParagraphStyle(
        "KeyCell",
        parent=styleN,
        fontName="Helvetica-Bold",
        fontSize=8.8,
        leading=10.8,
        textColor=BRAND["muted"],
    )
    styleVal = ParagraphStyle("ValCell", parent=styleN, fontSize=8.8, leading=10.8)
    styleCell = ParagraphStyle("Cell", parent=styleN, fontSize=8.0, leading=9.6)
    styleSub = ParagraphStyle("Sub", parent=styleN, fontName="Helvetica-Bold", fontSize=10, spaceBefore=4)

    def Pk(s: str) -> Paragraph:
        return Paragraph(_pdf_text(s), styleKey)

    def Pv(s: Any) -> Paragraph:
        return Paragraph(_pdf_text(s), styleVal)

    def Pc(s: Any) -> Paragraph:
        return Paragraph(_pdf_text(s, "-"), styleCell)

    pdf_buf = BytesIO()
    generated_ts = datetime.now().strftime("%d/%m/%Y %H:%M")

    def on_page(canvas, doc):
        _draw_header_footer(
            canvas,
            doc,
            title=report_title,
            subtitle=f"{company_name} • Test Report No. {_safe_str(header.get('testReportNumber'))}",
            status=status,
            left_note=f"Service {report.service_id} • Generated {generated_ts}",
            logo_path=logo_path,
        )

    doc = SimpleDocTemplate(
        pdf_buf,
        pagesize=A4,
        leftMargin=0.6 * inch,
        rightMargin=0.6 * inch,
        topMargin=1.05 * inch,
        bottomMargin=0.8 * inch,
        title=report_title,
    )
    avail_w = A4[0] - 1.2 * inch

    story: List[Any] = []
    story.append(Paragraph("QA TEST REPORT", styleTitle))
    status_hex = _rl_color_to_hex(_status_color(status))
    story.append(Paragraph(f"Overall Status: <b><font color='{status_hex}'>{status}</font></b>", styleN))
    story.append(Spacer(1, 0.1 * inch))

    # ---- customer / equipment ----
    story.append(Paragraph("1. Customer & Equipment Details", styleH))
    kv = [
        [Pk("Customer"), Pv(header.get("customerName")), Pk("SRF No. / Date"),
         Pv(f"{_safe_str(header.get('srfNumber'))} / {format_date(header.get('srfDate'))}")],
        [Pk("Address"), Pv(header.get("address")), Pk("Issue Date"), Pv(format_date(header.get("issueDate")))],
        [Pk("Nomenclature"), Pv(header.get("nomenclature")), Pk("Make / Model"),
         Pv(f"{_safe_str(header.get('make'))} / {_safe_str(header.get('model'))}")],
        [Pk("Serial No."), Pv(header.get("slNumber")), Pk("Category"), Pv(header.get("category"))],
        [Pk("Condition"), Pv(header.get("condition")), Pk("Testing Procedure No."), Pv(header.get("testingProcedureNumber"))],
        [Pk("Engineer / RP ID"), Pv(header.get("engineerNameRPId")), Pk("Location"), Pv(header.get("location"))],
        [Pk("Test Date"), Pv(format_date(header.get("testDate"))), Pk("Due Date"), Pv(format_date(header.get("testDueDate")))],
        [Pk("Temperature"), Pv(header.get("temperature") or "-"), Pk("Humidity"), Pv(header.get("humidity") or "-")],
    ]
    if reviewer:
        kv.append([Pk("Reviewed by"), Pv(reviewer), Pk(""), Pv("")])
    t = Table(kv, colWidths=[avail_w * 0.17, avail_w * 0.33, avail_w * 0.20, avail_w * 0.30])
    t.setStyle(_table_style_key_value())
    story.append(t)

    # ---- tools ----
    story.append(Paragraph("2. Standards / Tools Used", styleH))
    tools = tools_frame(header)
    if tools.empty:
        story.append(Paragraph("No tools recorded.", styleMuted))
    else:
        rows = [["Sl No.", "Nomenclature", "Make / Model", "Sr. No.", "Range", "Certificate No.", "Valid Till"]]
        for i, tr in enumerate(tools.itertuples(index=False), start=1):
            rows.append(
                [
                    str(i),
                    Pc(tr.nomenclature),
                    Pc(f"{tr.make} / {tr.model}"),
                    Pc(tr.SrNo),
                    Pc(tr.range),
                    Pc(tr.calibrationCertificateNo),
                    Pc(tr.calibrationValidTill),
                ]
            )
        tt = Table(rows, colWidths=[avail_w * w for w in (0.07, 0.18, 0.17, 0.13, 0.13, 0.18, 0.14)], repeatRows=1)
        tt.setStyle(_table_style_compact())
        story.append(tt)

    # ---- summary ----
    story.append(CondPageBreak(2.0 * inch))
    story.append(Paragraph("3. Summary of QA Test Results", styleH))
    if summary_df.empty and mechanical_df.empty:
        story.append(Paragraph("No test results available.", styleMuted))
    for caption, df in ((None, summary_df), ("Summary of Mechanical Test Results", mechanical_df)):
        if df.empty:
            continue
        if caption:
            story.append(Spacer(1, 0.12 * inch))
            story.append(Paragraph(caption, styleSub))
        data, spans = _summary_table_data(df, Pc)
        st_ = Table(
            data,
            colWidths=[avail_w * w for w in (0.07, 0.27, 0.17, 0.17, 0.19, 0.13)],
            repeatRows=1,
        )
        st_.setStyle(_table_style_summary(data, spans))
        story.append(st_)

    # ---- details ----
    story.append(CondPageBreak(2.5 * inch))
    story.append(Paragraph("4. Detailed Test Results", styleH))
    for n, res in enumerate(results, start=1):
        block: List[Any] = [
            Paragraph(_pdf_text(f"4.{n} {res.title}"), styleSub),
            Spacer(1, 0.04 * inch),
        ]
        if res.error:
            block.append(Paragraph(f"Could not be evaluated: {_pdf_text(res.error)}", styleMuted))
        elif res.rows.empty:
            block.append(Paragraph("No measurements recorded.", styleMuted))
        else:
            data = _detail_table_data(res.rows, Pc)
            ncol = max(1, len(data[0]))
            dt = Table(data, colWidths=[avail_w / ncol] * ncol, repeatRows=1)
            dt.setStyle(_table_style_compact(data))
            block.append(dt)

        tail = f"Tolerance: {_pdf_text(res.tolerance)}" if res.tolerance else ""
        remark_hex = _rl_color_to_hex(_status_color(res.status))
        block.append(Spacer(1, 0.04 * inch))
        block.append(
            Paragraph(f"{tail}{' • ' if tail else ''}Result: <b><font color='{remark_hex}'>{_pdf_text(res.remark, '-')}</font></b>", styleN)
        )
        story.append(KeepTogether(block))

        if include_charts:
            for fig in plots_for(res):
                story.append(Spacer(1, 0.06 * inch))
                story.append(Image(fig_to_png_bytes(fig), width=avail_w * 0.8, height=avail_w * 0.8 * 0.56))
        story.append(Spacer(1, 0.14 * inch))

    # ---- notes ----
    story.append(CondPageBreak(1.5 * inch))
    story.append(Paragraph("5. Notes", styleH))
    for note in header.get("notes") or []:
        story.append(Paragraph(_pdf_text(f"{_safe_str(note.get('slNo'), '')} {_safe_str(note.get('text'), '')}"), styleN))
        story.append(Spacer(1, 0.03 * inch))

    doc.build(story, onFirstPage=on_page, onLaterPages=on_page)
    pdf_buf.seek(0)
    logger.info("PDF built for service %s (%d tests, %s)", report.service_id, len(results), status)
    return pdf_buf.getvalue()
