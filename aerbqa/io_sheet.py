# aerbqa/io_sheet.py
from __future__ import annotations

import csv
import io
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from aerbqa.values import to_number

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

KVP_DOCUMENT = "accuracyOfOperatingPotential"
LINEARITY_DOCUMENT = "linearityOfMasLoading"

RX_REMARK = re.compile(r"^\s*(pass|fail)\b", re.I)
RX_TOTAL_FILTRATION = re.compile(r"^\s*total\s*filtration\s*$", re.I)
RX_LINEARITY_HINT = re.compile(r"linearity|mas\s*(loading|range|station)", re.I)

AVERAGE_MATCH = 0.1


def _cells(text: str) -> List[List[str]]:
    reader = csv.reader(io.StringIO(text or ""))
    return [[c.strip() for c in row] for row in reader if any(c.strip() for c in row)]


def _is_data_row(row: List[str]) -> bool:
    return bool(row) and np.isfinite(to_number(row[0]))


def _measurements(cells: Iterable[str]) -> Tuple[List[float], bool]:
    """Numeric cells in order; also reports whether a Pass/Fail cell was seen."""
    values: List[float] = []
    had_remark = False
    for c in cells:
        if RX_REMARK.match(c):
            had_remark = True
            continue
        v = to_number(c)
        if np.isfinite(v):
            values.append(float(v))
    return values, had_remark


def _drop_trailing_average(values: List[float]) -> List[float]:
    if len(values) < 2:
        return values
    last = values[-1]
    others = values[:-1]
    if abs(last - sum(others) / len(others)) < AVERAGE_MATCH:
        return others
    return values


def _label_value(row: List[str], label: str, fallback_idx: int) -> str:
    """Cell following the first cell containing `label`, else row[fallback_idx]."""
    lab = label.lower()
    for i, c in enumerate(row):
        if lab in c.lower().replace(" ", "") and i + 1 < len(row):
            return row[i + 1]
    return row[fallback_idx] if fallback_idx < len(row) else ""


# =============================================================================
# 1) One sheet (from text)
# =============================================================================
def parse_kvp_sheet(text: str, source_name: str = "uploaded.csv") -> Dict[str, Any]:
    """
    kVp accuracy sheet -> accuracyOfOperatingPotential document.

    Data rows: applied kVp, then the readings. Exported sheets also carry
    an average and a remark; the remark is dropped and a last value that
    equals the mean of the others is taken as the exported average.
    A "TotalFiltration" row is read by its Measured / Required / atKvp labels.
    """
    rows = _cells(text)
    out_rows: List[Dict[str, Any]] = []
    total_filtration: Optional[Dict[str, str]] = None

    for row in rows:
        if RX_TOTAL_FILTRATION.match(row[0]):
            total_filtration = {
                "measured": _label_value(row, "measured", 1),
                "required": _label_value(row, "required", 2),
                "atKvp": _label_value(row, "atkvp", 3),
            }
            continue
        if not _is_data_row(row):
            continue

        values, _ = _measurements(row[1:])
        values = _drop_trailing_average(values)
        out_rows.append({"appliedKvp": row[0], "measuredValues": values})

    if not out_rows and total_filtration is None:
        raise ValueError(f"{source_name}: no kVp rows found (first column must be the applied kVp).")

    doc: Dict[str, Any] = {"rows": out_rows}
    if total_filtration is not None:
        doc["totalFiltration"] = total_filtration
    logger.debug("%s: %d kVp rows", source_name, len(out_rows))
    return doc


def parse_linearity_sheet(text: str, source_name: str = "uploaded.csv") -> Dict[str, Any]:
    """
    Linearity sheet -> linearityOfMasLoading document.

    Data rows: mAs station (a value or a range such as "50-100"), then the
    output readings. Processed exports end with Avg and X (and CoL plus a
    remark when one was printed); those trailing columns are dropped.
    """
    rows = _cells(text)
    out_rows: List[Dict[str, Any]] = []

    for row in rows:
        if not _is_data_row(row):
            continue
        values, had_remark = _measurements(row[1:])
        if had_remark:
            values = values[:-3] if len(values) > 3 else values[:1]
        elif len(values) > 2 and values[0] > 0 and values[-1] < values[0] * 0.1:
            values = values[:-2]
        out_rows.append({"mAsApplied": row[0], "outputs": values})

    if not out_rows:
        raise ValueError(f"{source_name}: no linearity rows found (first column must be the mAs station).")

    logger.debug("%s: %d linearity rows", source_name, len(out_rows))
    return {"table2": out_rows}


def sheet_kind(text: str, source_name: str = "") -> str:
    """Document key a sheet belongs to, from its name or its header cells."""
    if RX_LINEARITY_HINT.search(source_name or ""):
        return LINEARITY_DOCUMENT
    head = " ".join(" ".join(r) for r in _cells(text)[:3] if not _is_data_row(r))
    if RX_LINEARITY_HINT.search(head):
        return LINEARITY_DOCUMENT
    return KVP_DOCUMENT


def parse_sheet_file(path: PathLike) -> Tuple[str, Dict[str, Any]]:
    path = Path(path)
    text = path.read_text(encoding="utf-8", errors="ignore")
    kind = sheet_kind(text, path.name)
    parser = parse_linearity_sheet if kind == LINEARITY_DOCUMENT else parse_kvp_sheet
    return kind, parser(text, source_name=path.name)


# =============================================================================
# 2) Batch loader (Streamlit multi-upload)
# =============================================================================
def parse_sheets(
    texts_and_names: Iterable[Tuple[str, str]],
) -> Tuple[Dict[str, Dict[str, Any]], pd.DataFrame]:
    """
    Parse several uploaded sheets. Returns (documents by key, errors) where
    errors has columns SourceFile / Error for sheets that failed to parse.
    A later sheet of the same kind replaces an earlier one.
    """
    items = list(texts_and_names)
    if not items:
        raise FileNotFoundError("No measurement sheets provided.")

    documents: Dict[str, Dict[str, Any]] = {}
    errors: List[Dict[str, str]] = []

    for text, name in items:
        kind = sheet_kind(text, name)
        parser = parse_linearity_sheet if kind == LINEARITY_DOCUMENT else parse_kvp_sheet
        try:
            doc = parser(text, source_name=name)
        except ValueError as e:
            logger.warning("Sheet %s skipped: %s", name, e)
            errors.append({"SourceFile": name, "Error": str(e)})
            continue
        if kind == KVP_DOCUMENT and kind in documents and "totalFiltration" in documents[kind] and "totalFiltration" not in doc:
            doc["totalFiltration"] = documents[kind]["totalFiltration"]
        documents[kind] = doc

    return documents, pd.DataFrame(errors, columns=["SourceFile", "Error"])


# =============================================================================
# 3) Sectioned workbook (.xlsx)
# =============================================================================
RX_TEST_MARKER = re.compile(r"^\s*TEST\s*:\s*(.+?)\s*$", re.I)
RX_READING_HEADER = re.compile(r"^(meas|measured|reading)[a-z/]*\d+$")
RX_TOLERANCE_TEXT = re.compile(r"^\s*(±|\+/-|\+-|<=|≤|>=|≥|<|>|=|\+|-)?\s*(\d+(?:\.\d*)?|\.\d+)")
RX_COL_ROW = re.compile(r"^\s*(coefficient\s*of\s*linearity|col)\s*$", re.I)

# section title prefix (upper case) -> document key; longer titles first
SECTION_DOCUMENTS: Tuple[Tuple[str, str], ...] = (
    ("ACCURACY OF OPERATING POTENTIAL", KVP_DOCUMENT),
    ("TOTAL FILTRATION", KVP_DOCUMENT),
    ("ACCURACY OF IRRADIATION TIME", "accuracyOfIrradiationTime"),
    ("LINEARITY OF MA LOADING", "linearityOfMaLoading"),
    ("LINEARITY OF MAS LOADING", LINEARITY_DOCUMENT),
    ("LINEARITY OF TIME", "linearityOfTime"),
    ("CONSISTENCY OF RADIATION OUTPUT", "outputConsistency"),
    ("REPRODUCIBILITY OF RADIATION OUTPUT", "reproducibilityOfRadiationOutput"),
    ("RADIATION LEAKAGE LEVEL", "tubeHousingLeakage"),
    ("TUBE HOUSING LEAKAGE", "tubeHousingLeakage"),
    ("DETAILS OF RADIATION PROTECTION SURVEY", "radiationProtectionSurvey"),
    ("RADIATION PROTECTION SURVEY", "radiationProtectionSurvey"),
)

# document key -> (row list key, header -> row field, readings field, header -> document field)
_COMMON_DOC_FIELDS = {
    "workload": "workload",
    "tolvalue": "toleranceValue",
    "tolerancevalue": "toleranceValue",
    "tolop": "toleranceOperator",
    "toleranceoperator": "toleranceOperator",
    "tolsign": "toleranceSign",
    "tolerancesign": "toleranceSign",
}
_REMARK_FIELDS = {"remark": "remark", "remarks": "remark"}
_OUTPUT_ROWS = {"kv": "kv", "kvp": "kv", "ma": "ma", "mas": "mas", "time": "time", **_REMARK_FIELDS}

SECTION_LAYOUT: Dict[str, Tuple[str, Dict[str, str], Optional[str], Dict[str, str]]] = {
    KVP_DOCUMENT: (
        "rows",
        {"appliedkvp": "appliedKvp", "setkv": "appliedKvp", "kvp": "appliedKvp", "averagekvp": "avgKvp",
         "avgkvp": "avgKvp", **_REMARK_FIELDS},
        "measuredValues",
        {},
    ),
    "accuracyOfIrradiationTime": (
        "irradiationTimes",
        {"settime": "setTime", "time": "setTime", "observedtime": "measuredTime", "measuredtime": "measuredTime",
         **_REMARK_FIELDS},
        "measuredTime",
        {},
    ),
    "linearityOfMaLoading": (
        "table2",
        {"ma": "ma", "mastation": "ma", "time": "time", **_REMARK_FIELDS},
        "outputs",
        {},
    ),
    LINEARITY_DOCUMENT: (
        "table2",
        {"mas": "mAsApplied", "masstation": "mAsApplied", "masrange": "mAsApplied", **_REMARK_FIELDS},
        "outputs",
        {},
    ),
    "linearityOfTime": (
        "table2",
        {"time": "time", "settime": "time", **_REMARK_FIELDS},
        "outputs",
        {},
    ),
    "outputConsistency": ("outputRows", _OUTPUT_ROWS, "outputs", {}),
    "reproducibilityOfRadiationOutput": ("outputRows", _OUTPUT_ROWS, "outputs", {}),
    "tubeHousingLeakage": (
        "leakageRows",
        {"location": "location", "left": "left", "right": "right", "front": "front", "back": "back", "top": "top",
         "up": "up", "down": "down", "max": "max", "unit": "unit", **_REMARK_FIELDS},
        None,
        {"ffd": "settings.ffd", "kvp": "settings.kvp", "ma": "settings.ma", "time": "settings.time"},
    ),
    "radiationProtectionSurvey": (
        "locations",
        {"location": "location", "mrhr": "mRPerHr", "mrperhr": "mRPerHr", "category": "category"},
        None,
        {"ma": "appliedCurrent", "appliedcurrent": "appliedCurrent", "kv": "appliedVoltage"},
    ),
}

# a modality that stores the same measurements under another record name
DOCUMENT_ALIASES: Dict[str, Tuple[str, ...]] = {
    "tubeHousingLeakage": ("radiationLeakageLevel",),
    "outputConsistency": ("reproducibilityOfRadiationOutput",),
    "accuracyOfIrradiationTime": ("timerTest", "timerAccuracy"),
}


def _norm_header(cell: str) -> str:
    return re.sub(r"[^a-z0-9]", "", re.sub(r"\(.*?\)", "", str(cell)).lower())


def section_document(title: str) -> Optional[str]:
    """Document key of a "TEST: <title>" section, or None for an unknown title."""
    t = re.sub(r"\s+", " ", str(title or "")).strip().upper()
    for prefix, key in SECTION_DOCUMENTS:
        if t.startswith(prefix):
            return key
    return None


def _tolerance_fields(text: str) -> Dict[str, str]:
    m = RX_TOLERANCE_TEXT.match(text or "")
    if not m:
        return {}
    symbol, value = m.group(1), m.group(2)
    out = {"toleranceValue": value}
    if symbol in ("±", "+/-", "+-", "+", "-"):
        out["toleranceSign"] = symbol
    elif symbol:
        out["toleranceOperator"] = symbol
    return out


def _workbook_rows(source: Any) -> List[List[str]]:
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    df = pd.read_excel(source, sheet_name=0, header=None, dtype=str, engine="openpyxl")
    return [["" if pd.isna(c) else str(c).strip() for c in row] for row in df.values.tolist()]


def _set_doc_field(doc: Dict[str, Any], field: str, value: str) -> None:
    if "." in field:
        parent, child = field.split(".", 1)
        doc.setdefault(parent, {}).setdefault(child, value)
    else:
        doc.setdefault(field, value)


def _section_record(key: str, header: List[str], row: List[str], doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """One data row -> one record of the section's row list; document-level cells go on `doc`."""
    _, row_fields, reading_field, doc_fields = SECTION_LAYOUT[key]
    rec: Dict[str, Any] = {}
    readings: List[float] = []

    for name, cell in zip(header, row):
        if not cell:
            continue
        if name in row_fields:
            rec.setdefault(row_fields[name], cell)
        elif reading_field and RX_READING_HEADER.match(name):
            v = to_number(cell)
            if np.isfinite(v):
                readings.append(float(v))
        elif name in doc_fields:
            _set_doc_field(doc, doc_fields[name], cell)
        elif name in _COMMON_DOC_FIELDS:
            _set_doc_field(doc, _COMMON_DOC_FIELDS[name], cell)
        elif name == "tolerance":
            for k, v in _tolerance_fields(cell).items():
                doc.setdefault(k, v)

    if reading_field and readings:
        rec[reading_field] = readings
    if not any(k != "remark" for k in rec):
        return None
    return rec


def _apply_aliases(documents: Dict[str, Dict[str, Any]], document_keys: Optional[Iterable[str]]) -> None:
    if document_keys is None:
        return
    wanted = set(document_keys)
    for key, alternatives in DOCUMENT_ALIASES.items():
        if key not in documents or key in wanted:
            continue
        for alt in alternatives:
            if alt in wanted and alt not in documents:
                documents[alt] = documents.pop(key)
                break


def read_workbook(
    source: Any,
    *,
    document_keys: Optional[Iterable[str]] = None,
    source_name: str = "uploaded.xlsx",
) -> Tuple[Dict[str, Dict[str, Any]], pd.DataFrame]:
    """
    Read a sectioned workbook (first sheet) into test records.

    Each test starts at a "TEST: <title>" cell; the next non-empty row is
    its header and the rows after it are data, until a blank row (a new
    header may follow within the same section). "Total Filtration" rows
    feed the kVp record and "Coefficient of Linearity" rows the current
    linearity record. document_keys, when given, renames records a
    modality stores under another name (tube leakage as radiation
    leakage level, for example).

    Returns (documents by key, errors) where errors has columns
    SourceFile / Section / Error.
    """
    rows = _workbook_rows(source)
    documents: Dict[str, Dict[str, Any]] = {}
    errors: List[Dict[str, str]] = []
    seen_marker = False

    key: Optional[str] = None
    title = ""
    header: List[str] = []
    for row in rows:
        first = row[0] if row else ""
        m = RX_TEST_MARKER.match(first)
        if m:
            seen_marker = True
            title = m.group(1)
            key = section_document(title)
            header = []
            if key is None:
                logger.warning("%s: unknown test section '%s'", source_name, title)
                errors.append({"SourceFile": source_name, "Section": title, "Error": "unknown test section"})
            else:
                documents.setdefault(key, {})
            continue

        if not any(row):
            header = []
            continue

        if RX_TOTAL_FILTRATION.match(first):
            documents.setdefault(KVP_DOCUMENT, {})["totalFiltration"] = {
                "measured": _label_value(row, "measured", 1),
                "required": _label_value(row, "required", 2),
                "atKvp": _label_value(row, "atkvp", 3),
            }
            continue
        if key is None:
            continue

        doc = documents[key]
        if RX_COL_ROW.match(first):
            doc.setdefault("coefficientOfLinearity", row[1] if len(row) > 1 else "")
            continue
        if not header:
            header = [_norm_header(c) for c in row]
            continue

        rec = _section_record(key, header, row, doc)
        if rec is not None:
            doc.setdefault(SECTION_LAYOUT[key][0], []).append(rec)

    if not seen_marker:
        raise ValueError(f"{source_name}: no 'TEST:' sections found in the first sheet.")

    for k in [k for k, d in documents.items() if not d]:
        logger.warning("%s: section for %s has no data rows", source_name, k)
        errors.append({"SourceFile": source_name, "Section": k, "Error": "no data rows"})
        del documents[k]

    _apply_aliases(documents, document_keys)
    logger.debug("%s: %d test records", source_name, len(documents))
    return documents, pd.DataFrame(errors, columns=["SourceFile", "Section", "Error"])
