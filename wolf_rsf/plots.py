"""
Caterpillar (dot-and-whisker) figure for the coefficient tables.

One row per covariate, one dodged point + CI whisker per home-range method,
one panel per result table, panels stacked vertically with a shared legend.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns


DEFAULT_DPI = 200
MARKERS = ["o", "s", "D", "^", "v"]


def _model_order(frames: List[pd.DataFrame]) -> List[str]:
    seen: List[str] = []
    for df in frames:
        for m in df.get("model", pd.Series(dtype=object)).tolist():
            if m not in seen:
                seen.append(m)
    return seen


def caterpillar_plot(
    ax,
    results: pd.DataFrame,
    term_labels: Optional[Mapping[str, str]] = None,
    models: Optional[List[str]] = None,
    colors: Optional[Dict[str, tuple]] = None,
    exponentiated: bool = True,
    log_scale: bool = True,
    conf_level: float = 0.95,
    dodge: float = 0.35,
):
    """Draw one panel on `ax`; covariates keep their row order top to bottom."""
    term_labels = term_labels or {}
    models = models or _model_order([results])
    if colors is None:
        colors = dict(zip(models, sns.color_palette("Set2", n_colors=max(len(models), 1))))

    terms = list(dict.fromkeys(results["term"].tolist()))
    y_of = {t: i for i, t in enumerate(terms)}
    n = len(models)

    for j, m in enumerate(models):
        sub = results[results["model"] == m]
        if sub.empty:
            continue
        offset = (j - (n - 1) / 2) * (dodge / max(n - 1, 1)) if n > 1 else 0.0
        y = np.array([y_of[t] for t in sub["term"]]) + offset
        est = sub["estimate"].to_numpy(dtype=float)
        xerr = np.vstack([
            est - sub["conf_low"].to_numpy(dtype=float),
            sub["conf_high"].to_numpy(dtype=float) - est,
        ])
        ax.errorbar(est, y, xerr=xerr, fmt=MARKERS[j % len(MARKERS)], color=colors[m],
                    markersize=5, capsize=3, linewidth=1.2, label=m)

    ax.axvline(1.0 if exponentiated else 0.0, color="gray", linestyle="--", linewidth=0.8)
    if exponentiated and log_scale:
        ax.set_xscale("log")
    ax.set_yticks(range(len(terms)))
    ax.set_yticklabels([term_labels.get(t, t) for t in terms], fontsize=9)
    ax.set_ylim(len(terms) - 0.5, -0.5)
    ci = f"{conf_level:.0%} CI"
    ax.set_xlabel(f"Odds ratio ({ci})" if exponentiated else f"Coefficient (log-odds, {ci})")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    return ax


def compose_figure(
    panel_results: Mapping[str, pd.DataFrame],
    term_labels: Optional[Mapping[str, str]] = None,
    exponentiated: bool = True,
    log_scale: bool = True,
    conf_level: float = 0.95,
    width: float = 8.0,
    panel_height: float = 4.0,
    palette: str = "Set2",
):
    """Stack one caterpillar panel per result table; returns the Figure."""
    titles = list(panel_results)
    if not titles:
        raise ValueError("No panels to plot")

    models = _model_order([panel_results[t] for t in titles])
    colors = dict(zip(models, sns.color_palette(palette, n_colors=max(len(models), 1))))

    with sns.axes_style("whitegrid"):
        fig, axes = plt.subplots(len(titles), 1, figsize=(width, panel_height * len(titles)),
                                 squeeze=False)

    for i, (title, ax) in enumerate(zip(titles, axes[:, 0])):
        caterpillar_plot(ax, panel_results[title], term_labels=term_labels, models=models,
                         colors=colors, exponentiated=exponentiated, log_scale=log_scale,
                         conf_level=conf_level)
        ax.set_title(f"({chr(ord('a') + i)}) {title}", loc="left", fontweight="bold")

    handles, labels = axes[0, 0].get_legend_handles_labels()
    if handles:
        fig.legend(handles, labels, loc="upper right", ncol=len(labels), frameon=False,
                   title="Home range")
    fig.tight_layout(rect=(0, 0, 1, 0.97))
    return fig


def save_figure(fig, path: str | Path, dpi: int = DEFAULT_DPI) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path
