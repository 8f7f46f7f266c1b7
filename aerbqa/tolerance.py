# aerbqa/tolerance.py
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Tuple

import numpy as np

from aerbqa.values import FAIL, PASS, UNDETERMINED, first_present, to_number

# =============================================================================
# Operators / signs
# =============================================================================
_OPERATORS = {
    "<=": "<=",
    "≤": "<=",
    "=<": "<=",
    "less than or equal to": "<=",
    "<": "<",
    "less than": "<",
    ">=": ">=",
    "≥": ">=",
    "=>": ">=",
    "greater than or equal to": ">=",
    ">": ">",
    "greater than": ">",
    "=": "=",
    "==": "=",
    "equal to": "=",
}

_SYMBOLS = {"<=": "≤", "<": "<", ">=": "≥", ">": ">", "=": "="}

_SIGNS = {
    "±": "±",
    "+/-": "±",
    "+-": "±",
    "plus-minus": "±",
    "+": "+",
    "-": "-",
}

EQUALITY_EPS = 0.001
BAND_EPS = 1e-6

# Required total filtration (mm Al) by operating potential.
DEFAULT_FILTRATION_BANDS = {
    "kvThreshold1": 70.0,
    "kvThreshold2": 100.0,
    "forKvGreaterThan70": 1.5,
    "forKvBetween70And100": 2.0,
    "forKvGreaterThan100": 2.5,
}


def normalize_operator(op: Any, default: str = "<=") -> str:
    if op is None:
        return default
    s = str(op).strip().lower()
    return _OPERATORS.get(s, default)


def normalize_sign(sign: Any, default: str = "±") -> str:
    if sign is None:
        return default
    s = str(sign).strip().lower()
    return _SIGNS.get(s, default)


def operator_symbol(op: Any) -> str:
    return _SYMBOLS[normalize_operator(op)]


def tolerance_label(sign: Any, value: Any, unit: str = "") -> str:
    """"±5%", "+2.0 kV" style text."""
    v = to_number(value)
    if not np.isfinite(v):
        return UNDETERMINED
    unit = unit or ""
    sep = "" if unit in ("", "%") else " "
    return f"{normalize_sign(sign)}{v:g}{sep}{unit}"


def operator_label(op: Any, value: Any, unit: str = "") -> str:
    v = to_number(value)
    if not np.isfinite(v):
        return UNDETERMINED
    unit = unit or ""
    sep = "" if unit in ("", "%") else " "
    return f"{operator_symbol(op)} {v:g}{sep}{unit}"


def read_tolerance(
    doc: Optional[Mapping],
    *,
    sign_keys: Tuple[str, ...] = ("toleranceSign",),
    value_keys: Tuple[str, ...] = ("toleranceValue",),
    default_sign: str = "±",
    default_value: float = 5.0,
    nested_key: str = "tolerance",
) -> Tuple[str, float]:
    """
    Sign/value pair from either flat keys or a nested {"tolerance": {...}}.
    Absent or unparseable parts fall back to the defaults.
    """
    doc = doc or {}
    raw = doc.get(nested_key)
    nested = raw if isinstance(raw, Mapping) else {}

    sign = first_present(doc, *sign_keys) or first_present(nested, "sign", "type")
    value = first_present(doc, *value_keys)
    if value is None:
        value = first_present(nested, "value")
    if value is None and not isinstance(raw, Mapping):
        value = raw

    v = to_number(value)
    return normalize_sign(sign, default_sign), (v if np.isfinite(v) else float(default_value))


def read_operator_tolerance(
    doc: Optional[Mapping],
    *,
    operator_keys: Tuple[str, ...] = ("toleranceOperator",),
    value_keys: Tuple[str, ...] = ("toleranceValue",),
    default_operator: str = "<=",
    default_value: float = 5.0,
    nested_key: str = "tolerance",
) -> Tuple[str, float]:
    doc = doc or {}
    raw = doc.get(nested_key)
    nested = raw if isinstance(raw, Mapping) else {}

    op = first_present(doc, *operator_keys) or first_present(nested, "operator")
    value = first_present(doc, *value_keys)
    if value is None:
        value = first_present(nested, "value")
    if value is None and not isinstance(raw, Mapping):
        value = raw

    v = to_number(value)
    return normalize_operator(op, default_operator), (v if np.isfinite(v) else float(default_value))


# =============================================================================
# Comparisons
# =============================================================================
def compare(value: Any, operator: Any, limit: Any, eps: float = EQUALITY_EPS) -> Optional[bool]:
    v = to_number(value)
    lim = to_number(limit)
    if not (np.isfinite(v) and np.isfinite(lim)):
        return None

    op = normalize_operator(operator, default="")
    if op == "<=":
        return v <= lim
    if op == "<":
        return v < lim
    if op == ">=":
        return v >= lim
    if op == ">":
        return v > lim
    if op == "=":
        return abs(v - lim) < eps
    return None


def within_signed_band(measured: Any, nominal: Any, sign: Any, tol: Any, eps: float = BAND_EPS) -> Optional[bool]:
    m, n, t = to_number(measured), to_number(nominal), to_number(tol)
    if not (np.isfinite(m) and np.isfinite(n) and np.isfinite(t)) or t <= 0:
        return None

    s = normalize_sign(sign)
    if s == "+":
        return m <= n + t + eps
    if s == "-":
        return m >= n - t - eps
    return abs(m - n) <= t + eps


def within_percent(measured: Any, nominal: Any, sign: Any, tol_pct: Any) -> Optional[bool]:
    m, n, t = to_number(measured), to_number(nominal), to_number(tol_pct)
    if not (np.isfinite(m) and np.isfinite(n) and np.isfinite(t)) or n == 0 or t <= 0:
        return None

    s = normalize_sign(sign)
    if s == "+":
        return m <= n * (1.0 + t / 100.0) + BAND_EPS
    if s == "-":
        return m >= n * (1.0 - t / 100.0) - BAND_EPS
    return abs(m - n) / abs(n) * 100.0 <= t + BAND_EPS


def within_zero_band(result: Any, sign: Any, tol: Any) -> Optional[bool]:
    r, t = to_number(result), to_number(tol)
    if not (np.isfinite(r) and np.isfinite(t)):
        return None

    s = normalize_sign(sign)
    if s == "+":
        return 0.0 <= r <= t
    if s == "-":
        return -t <= r <= 0.0
    return -t <= r <= t


def filtration_requirement(kvp: Any, bands: Optional[Mapping] = None) -> float:
    """Minimum total filtration (mm Al) at the given kVp."""
    kv = to_number(kvp)
    if not np.isfinite(kv):
        return np.nan

    b = dict(DEFAULT_FILTRATION_BANDS)
    for k, v in (bands or {}).items():
        f = to_number(v)
        if k in b and np.isfinite(f):
            b[k] = f

    if kv < b["kvThreshold1"]:
        return b["forKvGreaterThan70"]
    if kv <= b["kvThreshold2"]:
        return b["forKvBetween70And100"]
    return b["forKvGreaterThan100"]


# =============================================================================
# Remarks
# =============================================================================
def remark(flag: Optional[bool]) -> str:
    if flag is None:
        return UNDETERMINED
    return PASS if bool(flag) else FAIL


def combine_remarks(remarks: Iterable[str]) -> str:
    """Fail wins, then Pass; nothing decided -> "-"."""
    seen = set(remarks)
    if FAIL in seen:
        return FAIL
    if PASS in seen:
        return PASS
    return UNDETERMINED
