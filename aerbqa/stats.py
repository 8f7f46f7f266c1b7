# aerbqa/stats.py
from __future__ import annotations

import re
from typing import Any, Iterable

import numpy as np

from aerbqa.values import to_number

_RX_RANGE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[-–]\s*(\d+(?:\.\d+)?)")


def _finite(a: Iterable[Any]) -> np.ndarray:
    a = np.asarray(list(a) if not isinstance(a, np.ndarray) else a, dtype=float)
    return a[np.isfinite(a)]


def mean(values: Iterable[Any]) -> float:
    a = _finite(values)
    return float(np.mean(a)) if a.size else np.nan


def population_std(values: Iterable[Any]) -> float:
    a = _finite(values)
    return float(np.std(a, ddof=0)) if a.size else np.nan


def coefficient_of_variation(values: Iterable[Any], percent: bool = True) -> float:
    """
    Population std / mean. A single reading has no spread (0.0);
    no readings -> NaN.
    """
    a = _finite(values)
    if a.size == 0:
        return np.nan
    if a.size < 2:
        return 0.0

    mu = float(np.mean(a))
    if mu <= 0:
        return 0.0
    cv = float(np.std(a, ddof=0)) / mu
    return cv * 100.0 if percent else cv


def percent_deviation(measured: Any, nominal: Any) -> float:
    m, n = to_number(measured), to_number(nominal)
    if not (np.isfinite(m) and np.isfinite(n)) or n == 0:
        return np.nan
    return (m - n) / n * 100.0


def percent_error(measured: Any, nominal: Any) -> float:
    d = percent_deviation(measured, nominal)
    return abs(d) if np.isfinite(d) else np.nan


def coefficient_of_linearity(xs: Iterable[Any]) -> float:
    """(Xmax - Xmin) / (Xmax + Xmin) over the finite X values."""
    a = _finite(xs)
    if a.size == 0:
        return np.nan
    xmax, xmin = float(np.max(a)), float(np.min(a))
    denom = xmax + xmin
    if denom <= 0:
        return np.nan
    return abs(xmax - xmin) / denom


def parse_range_midpoint(x: Any) -> float:
    """
    Loading station written as a range ("50-100") -> midpoint.
    Plain numbers pass through.
    """
    if x is None:
        return np.nan
    m = _RX_RANGE.match(str(x))
    if m:
        return (float(m.group(1)) + float(m.group(2))) / 2.0
    return to_number(x)
