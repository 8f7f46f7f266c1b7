# app.py — AERB QA Service Reports
# streamlit run app.py

from __future__ import annotations

import hashlib
import json
import datetime as dt
from typing import Any, Dict, Tuple

import matplotlib.pyplot as plt
import pandas as pd
import streamlit as st

from aerbqa.api import ApiError, ReportApiClient, ReportNotFoundError, ServiceReport, build_report
from aerbqa.config import Settings
from aerbqa.export import export_report_workbook
from aerbqa.io_sheet import parse_sheets, read_workbook
from aerbqa.logging_config import setup_logging
from aerbqa.modalities import get_modality, modality_names
from aerbqa.plots import plots_for
from aerbqa.report import generate_pdf_service_report_bytes
from aerbqa.summary import build_summary, count_remarks, display_summary, overall_status, split_mechanical

# =============================================================================
# App identity
# =============================================================================
APP_VERSION = "1.0.0"
APP_NAME = "Diagnostic X-ray QA Reports"
APP_SHORT_NAME = "X-ray QA"

st.set_page_config(
    page_title=APP_SHORT_NAME,
    page_icon="☢️",
    layout="wide",
    initial_sidebar_state="expanded",
)

SETTINGS = Settings()
logger = setup_logging(SETTINGS.LOG_LEVEL, SETTINGS.LOG_FILE)

# =============================================================================
# Theme + CSS
# =============================================================================
THEME = {
    "primary": "#1f2a44",
    "accent": "#C99700",
    "bg": "#f5f7fa",
    "panel": "#ffffff",
    "border": "#e5e7eb",
    "text": "#111827",
    "muted": "#4b5563",
    "success": "#0f766e",
    "warn": "#b45309",
    "danger": "#b91c1c",
}


def inject_css(t: dict) -> None:
    st.markdown(
        f"""
<style>
:root {{
  --primary: {t["primary"]};
  --accent: {t["accent"]};
  --bg: {t["bg"]};
  --panel: {t["panel"]};
  --border: {t["border"]};
  --text: {t["text"]};
  --muted: {t["muted"]};
  --success: {t["success"]};
  --warn: {t["warn"]};
  --danger: {t["danger"]};
  --radius: 16px;
  --shadow: 0 6px 18px rgba(17, 24, 39, 0.06);
}}

.stApp {{ background: var(--bg); }}
footer {{ visibility: hidden; }}
.block-container {{ padding-top: 1.0rem !important; max-width: 1320px; }}

/* Sidebar */
section[data-testid="stSidebar"] {{
  background: linear-gradient(180deg, rgba(31,42,68,0.98), rgba(31,42,68,0.93));
}}
section[data-testid="stSidebar"] * {{ color: rgba(255,255,255,0.92) !important; }}
section[data-testid="stSidebar"] .stTextInput input {{
  background: rgba(255,255,255,0.08) !important;
  border: 1px solid rgba(255,255,255,0.12) !important;
  border-radius: 12px !important;
}}
section[data-testid="stSidebar"] div[data-baseweb="select"] > div {{
  background: rgba(255,255,255,0.08) !important;
  border: 1px solid rgba(255,255,255,0.14) !important;
  border-radius: 14px !important;
}}
div[data-baseweb="popover"] * {{ color: #111827 !important; }}

.sidebar-card {{
  background: rgba(255,255,255,0.06);
  border: 1px solid rgba(255,255,255,0.10);
  border-radius: 14px;
  padding: 12px;
  margin: 10px 0;
}}
.sidebar-card h4 {{ margin: 0 0 6px 0; font-size: 0.95rem; font-weight: 850; }}
.sidebar-muted {{ color: rgba(255,255,255,0.78) !important; font-size: 0.86rem; line-height: 1.35; }}

/* Topbar */
.topbar {{
  display: flex;
  align-items: center;
  justify-content: space-between;
  gap: 16px;
  padding: 14px 16px;
  background: var(--panel);
  border: 1px solid var(--border);
  border-radius: var(--radius);
  box-shadow: var(--shadow);
}}
.brand-title {{ font-size: 1.05rem; font-weight: 900; color: var(--text); }}
.brand-sub {{ font-size: 0.90rem; color: var(--muted); }}
.topbar-right {{ display:flex; gap:10px; flex-wrap:wrap; justify-content:flex-end; }}
.badge {{
  display:inline-flex; align-items:center; gap:8px;
  border-radius:999px; padding:6px 10px;
  border:1px solid var(--border);
  background: rgba(31,42,68,0.03);
  font-size:0.85rem; color: var(--text);
}}
.badge-dot {{ width:9px; height:9px; border-radius:50%; background: var(--muted); }}
.badge.success .badge-dot {{ background: var(--success); }}
.badge.warn .badge-dot {{ background: var(--warn); }}
.badge.danger .badge-dot {{ background: var(--danger); }}
.kbd {{
  font-family: ui-monospace, Menlo, Consolas, monospace;
  font-size:0.82rem; padding:2px 6px;
  border:1px solid var(--border); border-radius:8px;
}}

.section-title {{ margin: 18px 0 6px 0; font-weight: 900; font-size: 1.08rem; color: var(--text); }}
.section-sub {{ margin: 0 0 12px 0; color: var(--muted); line-height: 1.45; }}

.stButton button {{ border-radius: 12px !important; font-weight: 700 !important; }}
.primary-btn button {{ background: var(--primary) !important; color: white !important; }}
.ghost-btn button {{ background: rgba(31,42,68,0.03) !important; }}

/* Status banner */
.status-banner {{
  padding: 0.85rem 1rem;
  border-radius: 0.85rem;
  border: 1px solid var(--border);
  margin: 0.5rem 0 0.75rem 0;
  background: var(--panel);
  box-shadow: var(--shadow);
}}
.status-title {{ font-weight: 900; font-size: 1.02rem; }}
.status-sub {{ color: var(--muted); }}
.status-chip {{
  display:inline-flex; border-radius:999px; padding:5px 10px;
  border:1px solid var(--border); font-size:0.82rem; margin-left:8px;
}}
.status-chip.pass {{ background: rgba(15,118,110,0.10); color: var(--success); }}
.status-chip.warn {{ background: rgba(180,83,9,0.10); color: var(--warn); }}
.status-chip.fail {{ background: rgba(185,28,28,0.10); color: var(--danger); }}

/* Tabs */
div[data-baseweb="tab-list"] {{
  padding: 0.30rem !important;
  background: rgba(17,24,39,0.03) !important;
  border: 1px solid var(--border) !important;
  border-radius: 18px !important;
}}
button[data-baseweb="tab"] {{ flex: 1 !important; font-weight: 900 !important; border-radius: 16px !important; }}
button[data-baseweb="tab"][aria-selected="true"] {{
  background: rgba(201,151,0,0.12) !important;
  color: var(--primary) !important;
}}

div[data-testid="stVerticalBlockBorderWrapper"] {{
  background: var(--panel) !important;
  border-radius: var(--radius) !important;
  box-shadow: var(--shadow) !important;
}}
</style>
""",
        unsafe_allow_html=True,
    )


inject_css(THEME)

PREVIEW_ROWS = 50

# =============================================================================
# State management
# =============================================================================
def ensure_state() -> None:
    defaults = {
        "system_status": "ready",
        "service_id": "",
        "modality": modality_names()[0],
        "source": "Report API",
        "reviewer_name": "",
        "include_charts": True,
        "last_upload_signature": None,
        "report": None,
        "report_error": None,
        "pdf_bytes": None,
        "xlsx_bytes": None,
    }
    for k, v in defaults.items():
        st.session_state.setdefault(k, v)


ensure_state()

# =============================================================================
# Helpers
# =============================================================================
def _uploaded_signature(files) -> Tuple[Tuple[str, str, int], ...]:
    sig = []
    for f in files:
        b = f.getvalue()
        sig.append((f.name, hashlib.md5(b).hexdigest(), len(b)))
    return tuple(sorted(sig))


@st.cache_data(show_spinner=False)
def _parse_sheets_cached(texts_and_names: Tuple[Tuple[str, str], ...]):
    return parse_sheets(list(texts_and_names))


@st.cache_data(show_spinner=False)
def _read_workbook_cached(data: bytes, name: str, document_keys: Tuple[str, ...]):
    return read_workbook(data, document_keys=document_keys, source_name=name)


def _clear_report_state() -> None:
    for k in ("report", "report_error", "pdf_bytes", "xlsx_bytes"):
        st.session_state[k] = None


def _reset_on_new_upload(files) -> None:
    if not files:
        return
    sig = _uploaded_signature(files)
    if sig != st.session_state.get("last_upload_signature"):
        _clear_report_state()
        _parse_sheets_cached.clear()
        _read_workbook_cached.clear()
        st.session_state["last_upload_signature"] = sig


def parse_bundle(raw: bytes) -> Dict[str, Any]:
    """
    Saved report bundle (JSON): {"serviceId", "modality", "header", "tests"}.
    "tests" maps the stored test record keys to their documents.
    """
    try:
        data = json.loads(raw.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise ValueError(f"parse_bundle: not valid JSON ({e.msg} at line {e.lineno})") from e
    if not isinstance(data, dict):
        raise ValueError("parse_bundle: expected a JSON object at the top level.")
    tests = data.get("tests") or data.get("documents") or {}
    if not isinstance(tests, dict):
        raise ValueError("parse_bundle: 'tests' must map test names to records.")
    return {
        "serviceId": str(data.get("serviceId") or data.get("service_id") or ""),
        "modality": data.get("modality"),
        "header": data.get("header") or {},
        "tests": tests,
    }


def _status_banner(scope_name: str, status: str, counts: Dict[str, int]) -> None:
    s = (status or "").strip().upper()
    if s == "PASS":
        chip = '<span class="status-chip pass">PASS</span>'
        title = f"{scope_name}: All evaluated tests within tolerance"
    elif s == "FAIL":
        chip = '<span class="status-chip fail">FAIL</span>'
        title = f"{scope_name}: One or more tests out of tolerance"
    else:
        chip = '<span class="status-chip warn">INCOMPLETE</span>'
        title = f"{scope_name}: No test could be judged"

    st.markdown(
        f"""
<div class="status-banner">
  <div class="status-title">{title}{chip}</div>
  <div class="status-sub">Pass: <b>{counts.get("PASS", 0)}</b> • Fail: <b>{counts.get("FAIL", 0)}</b>
  • Incomplete: <b>{counts.get("INCOMPLETE", 0)}</b></div>
</div>
""",
        unsafe_allow_html=True,
    )


def _status_dot_class(system_status: str) -> str:
    s = (system_status or "").lower()
    if s == "ready":
        return "success"
    if s in ("loading", "not_found"):
        return "warn"
    return "danger"


def render_topbar(modality: str, service_id: str) -> None:
    badge_class = _status_dot_class(st.session_state.get("system_status", "ready"))
    badge_text = {"success": "System Ready", "warn": "Attention", "danger": "Action Required"}[badge_class]

    report = st.session_state.get("report")
    if isinstance(report, ServiceReport):
        lr = f"Report {report.report_number}: {overall_status(report.results)}"
    else:
        lr = "Report: —"

    st.markdown(
        f"""
<div class="topbar">
  <div class="brand">
    <div class="brand-title">{APP_NAME} <span class="kbd">v{APP_VERSION}</span></div>
    <div class="brand-sub">Intake • Summary • Test details • Reports</div>
  </div>
  <div class="topbar-right">
    <div class="badge {badge_class}"><span class="badge-dot"></span><span>{badge_text}</span></div>
    <div class="badge"><span>{modality}</span></div>
    <div class="badge"><span>Service {service_id or "—"}</span></div>
    <div class="badge"><span>{lr}</span></div>
  </div>
</div>
""",
        unsafe_allow_html=True,
    )


def _not_found_panel(message: str) -> None:
    with st.container(border=True):
        st.markdown("### Report Not Found")
        st.caption(message)
        st.caption("Check the service id, or that the report header was saved for this visit.")


# =============================================================================
# Sidebar
# =============================================================================
with st.sidebar:
    st.markdown(f"### {APP_SHORT_NAME}")
    st.caption("AERB QA test reports for diagnostic X-ray equipment")

    st.markdown('<div class="sidebar-card"><h4>Service visit</h4></div>', unsafe_allow_html=True)

    service_id = st.text_input("Service ID", value=st.session_state["service_id"])
    names = modality_names()
    current = st.session_state["modality"] if st.session_state["modality"] in names else names[0]
    modality_name = st.selectbox("Modality", names, index=names.index(current))

    if service_id != st.session_state["service_id"] or modality_name != st.session_state["modality"]:
        _clear_report_state()
    st.session_state["service_id"] = service_id
    st.session_state["modality"] = modality_name

    st.markdown('<div class="sidebar-card"><h4>Data source</h4></div>', unsafe_allow_html=True)
    source = st.radio(
        "Source",
        ["Report API", "Upload files"],
        index=0 if st.session_state["source"] == "Report API" else 1,
        help="Report API loads the saved header and test records. Upload files uses a saved JSON bundle and/or CSV sheets or an .xlsx workbook.",
    )
    st.session_state["source"] = source

    mod = get_modality(modality_name)
    st.markdown(
        f"""
<div class="sidebar-card">
  <div class="sidebar-muted">
    <b>Equipment</b>: {mod.nomenclature}<br/>
    <b>Tests</b>: {len(mod.tests)}<br/>
    <b>API</b>: <code>{SETTINGS.API_URL}</code>
  </div>
</div>
""",
        unsafe_allow_html=True,
    )

    with st.expander("Help / SOP"):
        st.markdown(
            """
- **Intake**: enter the service id, pick the modality and load the report from the API, or upload a JSON bundle / CSV sheets / .xlsx workbook.
- **Summary**: review the overall status and the summary of QA test results.
- **Test details**: derived tables, remarks and charts per test.
- **Reports**: download the PDF test report and the Excel workbook.
"""
        )

    st.markdown("---")
    st.caption(f"Version {APP_VERSION} • QA test reporting")

# =============================================================================
# Header
# =============================================================================
render_topbar(modality_name, service_id)

st.markdown('<div class="section-title">Overview</div>', unsafe_allow_html=True)
st.markdown(
    '<div class="section-sub">Evaluate stored QA measurements against AERB tolerances and issue the test report.</div>',
    unsafe_allow_html=True,
)

# =============================================================================
# Tabs
# =============================================================================
tab_intake, tab_summary, tab_details, tab_reports = st.tabs(
    ["📥 Intake", "📋 Summary", "🔬 Test details", "📄 Reports & Export"]
)

# =============================================================================
# TAB 1: INTAKE
# =============================================================================
with tab_intake:
    st.markdown('<div class="section-title">Intake</div>', unsafe_allow_html=True)

    left, right = st.columns([1.12, 0.88], gap="large")

    with left:
        if source == "Report API":
            with st.container(border=True):
                st.markdown("**Load saved report**")
                st.caption(f"Header and test records for **{modality_name}** are read from the report service.")
                st.markdown('<div class="primary-btn">', unsafe_allow_html=True)
                load_btn = st.button("Load report", use_container_width=True, disabled=not service_id.strip())
                st.markdown("</div>", unsafe_allow_html=True)

            if load_btn:
                _clear_report_state()
                st.session_state["system_status"] = "loading"
                try:
                    with st.spinner("Loading report…"):
                        client = ReportApiClient.from_settings(SETTINGS)
                        st.session_state["report"] = client.fetch_report(service_id.strip(), mod)
                    st.session_state["system_status"] = "ready"
                except ReportNotFoundError as e:
                    logger.info("Report not found: %s", e)
                    st.session_state["system_status"] = "not_found"
                    st.session_state["report_error"] = str(e)
                except ApiError as e:
                    logger.error("Report load failed: %s", e)
                    st.session_state["system_status"] = "error"
                    st.error(f"Report service error: {e}")
        else:
            with st.container(border=True):
                st.markdown("**Report bundle (.json)** and/or **measurement sheets (.csv, .xlsx)**")
                uploaded = st.file_uploader(
                    "Drag files here or browse",
                    type=["json", "csv", "xlsx"],
                    accept_multiple_files=True,
                    key="report_uploader",
                )

            _reset_on_new_upload(uploaded)

            if not uploaded:
                st.info("No files uploaded. Provide a saved report bundle, CSV sheets or a sectioned workbook.")
            elif st.session_state.get("report") is None:
                header: Dict[str, Any] = {}
                documents: Dict[str, Any] = {}
                bundle_id = ""
                try:
                    for f in uploaded:
                        if f.name.lower().endswith(".json"):
                            bundle = parse_bundle(f.getvalue())
                            header = bundle["header"]
                            documents.update(bundle["tests"])
                            bundle_id = bundle["serviceId"]
                            if bundle["modality"] and get_modality(bundle["modality"]).name != mod.name:
                                st.warning(f"{f.name} was saved for {bundle['modality']}; evaluating as {mod.name}.")

                    sheets = tuple(
                        (f.getvalue().decode("utf-8", errors="ignore"), f.name)
                        for f in uploaded
                        if f.name.lower().endswith(".csv")
                    )
                    if sheets:
                        sheet_docs, df_errors = _parse_sheets_cached(sheets)
                        documents.update(sheet_docs)
                        if len(df_errors) > 0:
                            st.warning("Some sheets could not be parsed.")
                            with st.expander("Parsing details"):
                                st.dataframe(df_errors, use_container_width=True)

                    for f in uploaded:
                        if f.name.lower().endswith(".xlsx"):
                            book_docs, df_errors = _read_workbook_cached(
                                f.getvalue(), f.name, tuple(mod.document_keys)
                            )
                            documents.update(book_docs)
                            if len(df_errors) > 0:
                                st.warning(f"Some sections of {f.name} could not be read.")
                                with st.expander("Workbook details"):
                                    st.dataframe(df_errors, use_container_width=True)

                    st.session_state["report"] = build_report(service_id or bundle_id or "offline", mod, header, documents)
                    st.session_state["system_status"] = "ready"
                except (ValueError, KeyError) as e:
                    st.session_state["system_status"] = "error"
                    st.error(f"Could not read the uploaded files: {e}")

        if st.session_state.get("report_error"):
            _not_found_panel(st.session_state["report_error"])

        report = st.session_state.get("report")
        if isinstance(report, ServiceReport):
            found = sum(1 for d in report.documents.values() if d)
            m1, m2, m3 = st.columns(3)
            m1.metric("Test records", found)
            m2.metric("Tests evaluated", len(report.results))
            m3.metric("Overall", overall_status(report.results))
            st.success("Report evaluated. Continue to **Summary**.")

            with st.expander("Header preview"):
                st.json(report.header, expanded=False)

    with right:
        with st.container(border=True):
            st.markdown("**Tests for this modality**")
            st.dataframe(
                pd.DataFrame([{"Test": t.title, "Record": t.document_key} for t in mod.tests]).head(PREVIEW_ROWS),
                use_container_width=True,
                hide_index=True,
            )

report = st.session_state.get("report")

# =============================================================================
# TAB 2: SUMMARY
# =============================================================================
with tab_summary:
    st.markdown('<div class="section-title">Summary of QA Test Results</div>', unsafe_allow_html=True)

    if not isinstance(report, ServiceReport):
        st.info("Load or upload a report in **Intake** first.")
    else:
        _status_banner(report.modality.name, overall_status(report.results), count_remarks(report.results))

        with st.container(border=True):
            st.markdown(
                f"**{report.header.get('customerName')}** • {report.header.get('nomenclature')} • "
                f"{report.header.get('make')} / {report.header.get('model')} • Sr. {report.header.get('slNumber')}"
            )
            main_results, mechanical_results = split_mechanical(report.results)
            st.dataframe(display_summary(build_summary(main_results)), use_container_width=True, hide_index=True)
            if mechanical_results:
                st.markdown("**Summary of Mechanical Test Results**")
                st.dataframe(
                    display_summary(build_summary(mechanical_results)), use_container_width=True, hide_index=True
                )

# =============================================================================
# TAB 3: TEST DETAILS
# =============================================================================
with tab_details:
    st.markdown('<div class="section-title">Test details</div>', unsafe_allow_html=True)

    if not isinstance(report, ServiceReport):
        st.info("Load or upload a report in **Intake** first.")
    elif not report.results:
        st.warning("No test records were found for this service.")
    else:
        for res in report.results:
            with st.expander(f"{res.title} — {res.remark}", expanded=res.status == "FAIL"):
                if res.error:
                    st.error(f"Could not be evaluated: {res.error}")
                    continue
                if res.tolerance:
                    st.caption(f"Tolerance: {res.tolerance}")
                st.dataframe(res.rows, use_container_width=True, hide_index=True)
                for fig in plots_for(res):
                    st.pyplot(fig)
                    plt.close(fig)

# =============================================================================
# TAB 4: REPORTS & EXPORT
# =============================================================================
with tab_reports:
    st.markdown('<div class="section-title">Reports & Export</div>', unsafe_allow_html=True)

    if not isinstance(report, ServiceReport):
        st.info("Load or upload a report in **Intake** first.")
        st.stop()

    with st.container(border=True):
        st.markdown("**Report metadata**")
        c1, c2 = st.columns(2)
        with c1:
            reviewer = st.text_input("Reviewer", value=st.session_state.get("reviewer_name", ""))
        with c2:
            include_charts = st.toggle("Include charts", value=bool(st.session_state.get("include_charts", True)))
        st.session_state["reviewer_name"] = reviewer
        st.session_state["include_charts"] = include_charts

    left, right = st.columns(2, gap="large")
    with left:
        with st.container(border=True):
            st.markdown("**PDF test report**")
            st.markdown('<div class="primary-btn">', unsafe_allow_html=True)
            gen_btn = st.button("Generate PDF report", use_container_width=True)
            st.markdown("</div>", unsafe_allow_html=True)

    with right:
        with st.container(border=True):
            st.markdown("**Excel workbook**")
            xlsx_btn = st.button("Build workbook", use_container_width=True)

    if gen_btn:
        try:
            with st.spinner("Generating PDF…"):
                st.session_state["pdf_bytes"] = generate_pdf_service_report_bytes(
                    report,
                    company_name=SETTINGS.COMPANY_NAME,
                    reviewer=reviewer or None,
                    include_charts=include_charts,
                    logo_path=SETTINGS.LOGO_PATH,
                )
            st.success("PDF report generated.")
        except (ValueError, OSError) as e:
            logger.exception("PDF generation failed")
            st.error(f"Report generation failed: {e}")

    if xlsx_btn:
        with st.spinner("Building workbook…"):
            st.session_state["xlsx_bytes"] = export_report_workbook(report)

    stamp = dt.date.today().strftime("%Y%m%d")
    if st.session_state.get("pdf_bytes"):
        st.download_button(
            "Download PDF",
            data=st.session_state["pdf_bytes"],
            file_name=report.pdf_name,
            mime="application/pdf",
        )
    if st.session_state.get("xlsx_bytes"):
        st.download_button(
            "Download Excel",
            data=st.session_state["xlsx_bytes"],
            file_name=f"{report.modality.slug}-{report.report_number}-{stamp}.xlsx".replace("/", "-"),
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )

st.markdown("---")
st.caption(f"{APP_NAME} • Version {APP_VERSION} • Results valid under the stated conditions of measurement")
