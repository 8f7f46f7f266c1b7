# aerbqa/values.py
from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

import numpy as np

# Leading numeric token, the way a browser parseFloat reads "80 kV" or "5%".
_RX_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")

PASS = "Pass"
FAIL = "Fail"
UNDETERMINED = "-"


# =============================================================================
# Parsing
# =============================================================================
def to_number(x: Any) -> float:
    """
    Lenient numeric parse of raw record values.

    Numbers pass through, strings are read up to the first non-numeric
    character ("80 kV" -> 80.0), everything else is NaN.
    """
    if x is None or isinstance(x, bool):
        return np.nan
    if isinstance(x, (int, float, np.integer, np.floating)):
        v = float(x)
        return v if np.isfinite(v) else np.nan

    m = _RX_LEADING_NUMBER.match(str(x))
    if not m:
        return np.nan
    return float(m.group(1))


def to_positive(x: Any) -> float:
    v = to_number(x)
    return v if np.isfinite(v) and v > 0 else np.nan


def reading(x: Any, key: Optional[str] = None) -> float:
    """
    One measured reading. Records store readings either bare ("81.2")
    or wrapped ({"value": "81.2"}, {"kvp": "81.2", "time": "0.1"}).
    """
    if isinstance(x, Mapping):
        if key is not None:
            return to_number(x.get(key))
        for k in ("value", "reading", "measured", "kvp", "output"):
            if k in x:
                return to_number(x.get(k))
        return np.nan
    return to_number(x)


def numbers(values: Optional[Iterable[Any]], key: Optional[str] = None, positive: bool = True) -> np.ndarray:
    """Finite readings (optionally > 0) in input order."""
    if values is None:
        return np.array([], dtype=float)
    if isinstance(values, (str, bytes, Mapping)):
        values = [values]

    out = []
    for v in values:
        f = reading(v, key=key)
        if not np.isfinite(f):
            continue
        if positive and f <= 0:
            continue
        out.append(f)
    return np.asarray(out, dtype=float)


def is_blank(x: Any) -> bool:
    if x is None:
        return True
    if isinstance(x, float) and np.isnan(x):
        return True
    return isinstance(x, str) and not x.strip()


def first_present(doc: Optional[Mapping], *keys: str, default: Any = None) -> Any:
    """First non-blank value among legacy key aliases."""
    if not doc:
        return default
    for k in keys:
        v = doc.get(k)
        if not is_blank(v):
            return v
    return default


def as_rows(doc: Optional[Mapping], *keys: str) -> list:
    """The first list-valued entry among `keys`, filtered to dict rows."""
    if not doc:
        return []
    for k in keys:
        v = doc.get(k)
        if isinstance(v, list):
            return [r for r in v if isinstance(r, Mapping)]
    return []


# =============================================================================
# Display
# =============================================================================
def fmt(x: Any, digits: int, fallback: str = UNDETERMINED) -> str:
    v = to_number(x)
    if not np.isfinite(v):
        return fallback
    return f"{v:.{int(digits)}f}"


def fmt_plain(x: Any, fallback: str = UNDETERMINED) -> str:
    """Raw value as text, numbers without trailing zeros."""
    if is_blank(x):
        return fallback
    if isinstance(x, (int, float, np.integer, np.floating)):
        return f"{float(x):g}"
    return str(x).strip()


def normalize_remark(x: Any) -> str:
    s = "" if x is None else str(x).strip().upper()
    if s.startswith("PASS"):
        return PASS
    if s.startswith("FAIL"):
        return FAIL
    return UNDETERMINED
