"""
Visualization functions for differential expression results.

Functions
---------
volcano_plot
    log2 fold change vs -log10 adjusted p-value, coloured by significance.
ma_plot
    log2 fold change vs mean normalized count.
dispersion_plot
    Gene-wise, trend and final dispersions against mean count.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .dispersion import DispersionModel
from .ranking import significant


def _save(fig, outpath: Optional[str | Path], dpi: int) -> None:
    if outpath is not None:
        outpath = Path(outpath)
        outpath.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(outpath, dpi=dpi, bbox_inches="tight")


def volcano_plot(
    df: pd.DataFrame,
    *,
    x_col: str = "log2FoldChange",
    padj_col: str = "padj",
    label_col: str = "gene_id",
    alpha: float = 0.05,
    title: Optional[str] = None,
    top_n_labels: int = 10,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Create a volcano plot of log2 fold change vs significance.

    Generates a scatter plot with log2 fold change on the x-axis and
    -log10(padj) on the y-axis. Points with ``padj < alpha`` are drawn in
    red, the rest in grey. Genes without an adjusted p-value are omitted.

    Parameters
    ----------
    df : pd.DataFrame
        Result table from :func:`run_differential_expression`.
    x_col : str, default "log2FoldChange"
        Column name for x-axis values.
    padj_col : str, default "padj"
        Column name for adjusted p-values.
    label_col : str, default "gene_id"
        Column name for point labels.
    alpha : float, default 0.05
        Significance threshold; a horizontal line is drawn at -log10(alpha).
    title : str or None, default None
        Plot title.
    top_n_labels : int, default 10
        Number of most significant points to label.
    outpath : str, Path, or None, default None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes

    Raises
    ------
    ValueError
        If no row has both a fold change and an adjusted p-value.
    """
    sub = df[np.isfinite(df[x_col]) & np.isfinite(df[padj_col])]
    if sub.empty:
        raise ValueError("volcano_plot received no rows with log2FoldChange and padj.")

    x = sub[x_col].to_numpy(dtype=float)
    y = -np.log10(sub[padj_col].clip(lower=1e-300).to_numpy(dtype=float))
    sig = significant(sub, alpha=alpha, padj_col=padj_col).to_numpy()

    fig, ax = plt.subplots()
    ax.scatter(x[~sig], y[~sig], c="#969696", s=12, alpha=0.7, label=f"padj >= {alpha:g}")
    ax.scatter(x[sig], y[sig], c="#e34a33", s=12, alpha=0.7, label=f"padj < {alpha:g}")

    ax.axhline(-np.log10(alpha), color="gray", linestyle="--", linewidth=0.8, alpha=0.6)
    ax.axvline(0.0, color="gray", linestyle=":", linewidth=0.8, alpha=0.6)

    ax.set_xlabel(r"$\log_2$ fold change")
    ax.set_ylabel(r"$-\log_{10}$ adjusted p-value")
    ax.legend(loc="upper left", frameon=False, fontsize=8)
    if title:
        ax.set_title(title)

    if top_n_labels:
        top = sub.sort_values(padj_col, ascending=True, kind="mergesort").head(int(top_n_labels))
        for _, r in top.iterrows():
            ax.text(float(r[x_col]), -np.log10(max(float(r[padj_col]), 1e-300)), str(r[label_col]), fontsize=8)

    ax.margins(0.05)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def ma_plot(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    title: Optional[str] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """log2 fold change against mean normalized count (log x-axis)."""
    sub = df[(df["baseMean"] > 0) & np.isfinite(df["log2FoldChange"])]
    if sub.empty:
        raise ValueError("ma_plot received no rows with baseMean > 0 and a fold change.")
    sig = significant(sub, alpha=alpha).to_numpy()

    fig, ax = plt.subplots()
    ax.scatter(sub["baseMean"][~sig], sub["log2FoldChange"][~sig], c="#969696", s=8, alpha=0.6)
    ax.scatter(sub["baseMean"][sig], sub["log2FoldChange"][sig], c="#e34a33", s=8, alpha=0.8)
    ax.axhline(0.0, color="gray", linewidth=0.8)
    ax.set_xscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel(r"$\log_2$ fold change")
    if title:
        ax.set_title(title)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def dispersion_plot(
    disp: DispersionModel,
    *,
    title: Optional[str] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Gene-wise (black), final (blue) and trend (red) dispersions vs mean."""
    ok = np.isfinite(disp.base_mean) & (disp.base_mean > 0)
    if not ok.any():
        raise ValueError("dispersion_plot received no tested genes.")
    mean = disp.base_mean[ok]

    fig, ax = plt.subplots()
    ax.scatter(mean, disp.genewise[ok], c="black", s=6, alpha=0.5, label="gene-est")
    ax.scatter(mean, disp.final[ok], c="#3182bd", s=6, alpha=0.5, label="final")
    grid = np.geomspace(mean.min(), mean.max(), 200)
    ax.plot(grid, disp.trend_function(grid), c="#e34a33", linewidth=1.2, label="fitted")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("dispersion")
    ax.legend(loc="lower left", frameon=False, fontsize=8)
    if title:
        ax.set_title(title)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax
