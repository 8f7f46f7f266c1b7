# aerbqa/plots.py
from __future__ import annotations

from io import BytesIO
from typing import List, Optional

import numpy as np
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

from aerbqa.results import TestResult


# =============================================================================
# Plot helpers (bands, ticks, padding)
# =============================================================================
def _add_tolerance_band(
    ax: plt.Axes,
    tol: float,
    *,
    upper_passes: bool = False,
    color_pass: str = "#2ca02c",
    color_fail: str = "#d62728",
    alpha_pass: float = 0.10,
    alpha_fail: float = 0.08,
) -> None:
    """
    Shaded PASS/FAIL regions either side of the tolerance, using the
    current y-limits.
    """
    tol = float(tol)
    y0, y1 = ax.get_ylim()
    ymin, ymax = (y0, y1) if y0 < y1 else (y1, y0)

    if upper_passes:
        ax.axhspan(ymin, tol, alpha=alpha_fail, color=color_fail, zorder=0)
        ax.axhspan(tol, ymax, alpha=alpha_pass, color=color_pass, zorder=0)
    else:
        ax.axhspan(ymin, tol, alpha=alpha_pass, color=color_pass, zorder=0)
        ax.axhspan(tol, ymax, alpha=alpha_fail, color=color_fail, zorder=0)

    ax.set_ylim(y0, y1)


def _nice_ytick_step(span: float, target_ticks: int = 6) -> float:
    span = float(span)
    if not np.isfinite(span) or span <= 0:
        return 0.2
    raw = span / max(2, int(target_ticks))
    base = 10 ** np.floor(np.log10(raw))
    for m in [0.05, 0.1, 0.2, 0.5, 1, 2, 5, 10]:
        step = m * base
        if step >= raw:
            return float(step)
    return float(10 * base)


def _set_y_ticks_nice_range(ax: plt.Axes, ymin: float, ymax: float) -> None:
    step = _nice_ytick_step((ymax - ymin) if ymax > ymin else ymax)
    start = np.floor(float(ymin) / step) * step
    ax.set_yticks(np.arange(start, float(ymax) + step, step))


def _empty_figure(title: str) -> plt.Figure:
    fig = plt.figure(figsize=(7, 4))
    plt.text(0.5, 0.5, "No data", ha="center", va="center")
    plt.axis("off")
    plt.title(title)
    plt.tight_layout()
    return fig


def fig_to_png_bytes(fig: plt.Figure, dpi: int = 200) -> BytesIO:
    buf = BytesIO()
    fig.savefig(buf, format="png", dpi=int(dpi), bbox_inches="tight")
    plt.close(fig)
    buf.seek(0)
    return buf


# =============================================================================
# Linearity
# =============================================================================
def plot_linearity(result: TestResult, title: Optional[str] = None) -> plt.Figure:
    """X per loading station with the Xmax / Xmin lines; CoL in the legend."""
    title = title or result.title
    labels: List[str] = list(result.extras.get("labels") or [])
    xs = np.asarray(result.extras.get("x") or [], dtype=float)
    if xs.size == 0 or not np.isfinite(xs).any():
        return _empty_figure(title)

    xmax = float(result.extras.get("x_max", np.nanmax(xs)))
    xmin = float(result.extras.get("x_min", np.nanmin(xs)))
    col = result.extras.get("col", np.nan)

    fig, ax = plt.subplots(figsize=(7.4, 4.2), dpi=150)
    idx = np.arange(len(xs))
    ax.plot(idx, xs, marker="o", markersize=5, linewidth=1.6, label="X (output / loading)")
    ax.axhline(xmax, linewidth=1.2, linestyle="--", label=f"X max = {xmax:.4f}")
    ax.axhline(xmin, linewidth=1.2, linestyle="-.", label=f"X min = {xmin:.4f}")

    ax.set_xticks(idx)
    ax.set_xticklabels(labels, rotation=20, ha="right")
    ax.set_title(title, fontweight="bold")
    ax.set_ylabel("X")
    ax.grid(True, alpha=0.22)

    if np.isfinite(col):
        tol = result.extras.get("tolerance_value", np.nan)
        ax.plot([], [], " ", label=f"CoL = {col:.3f} (tol {tol:g})")

    span = max(xmax - xmin, abs(xmax) * 0.05, 1e-6)
    ax.set_ylim(xmin - span * 0.6, xmax + span * 0.6)
    ax.legend(loc="best", fontsize=8)
    fig.tight_layout()
    return fig


# =============================================================================
# Reproducibility
# =============================================================================
def plot_reproducibility(result: TestResult, title: Optional[str] = None) -> plt.Figure:
    """CoV per exposure setting against the tolerance line."""
    title = title or result.title
    labels: List[str] = list(result.extras.get("labels") or [])
    cvs = np.asarray(result.extras.get("cov") or [], dtype=float)
    if cvs.size == 0 or not np.isfinite(cvs).any():
        return _empty_figure(title)

    tol = float(result.extras.get("tolerance_value", np.nan))
    op = str(result.extras.get("operator", "<="))
    percent = bool(result.extras.get("percent", True))

    fig, ax = plt.subplots(figsize=(7.4, 4.2), dpi=150)
    idx = np.arange(len(cvs))
    ax.bar(idx, np.nan_to_num(cvs, nan=0.0), width=0.55, label="CoV")
    if np.isfinite(tol):
        ax.axhline(tol, linewidth=1.3, linestyle="--", label=f"Tolerance = {tol:g}{'%' if percent else ''}")

    ax.set_xticks(idx)
    ax.set_xticklabels(labels, rotation=20, ha="right")
    ax.set_title(title, fontweight="bold")
    ax.set_ylabel("CoV (%)" if percent else "CoV")
    ax.grid(True, axis="y", alpha=0.22)

    top = float(np.nanmax(cvs))
    ref_top = max(top * 1.2, (tol if np.isfinite(tol) else 0.0) * 1.3, 1e-3)
    ax.set_ylim(0.0, ref_top)
    _set_y_ticks_nice_range(ax, 0.0, ref_top)
    if np.isfinite(tol):
        _add_tolerance_band(ax, tol, upper_passes=op in (">=", ">"))

    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig


def plots_for(result: TestResult) -> List[plt.Figure]:
    """Charts that accompany a test in the report (may be empty)."""
    if "col" in result.extras and result.extras.get("x"):
        return [plot_linearity(result)]
    if "cov" in result.extras and result.extras.get("cov"):
        return [plot_reproducibility(result)]
    return []
