from __future__ import annotations

import numpy as np
import pandas as pd

from .exceptions import EmptyInputError


def significant(table: pd.DataFrame, alpha: float = 0.05, padj_col: str = "padj") -> pd.Series:
    """Boolean mask of rows with ``padj < alpha`` (NaN counts as not significant)."""
    return table[padj_col].fillna(np.inf) < alpha


def select_downregulated(
    table: pd.DataFrame,
    lfc_col: str = "log2FoldChange",
    padj_col: str = "padj",
) -> pd.DataFrame:
    """
    Rows with a negative log2 fold change, most significant first.

    The comparison is numeric; NaN fold changes are excluded. Rows are
    sorted by padj ascending with NaN last, ties kept in input order.
    """
    lfc = pd.to_numeric(table[lfc_col], errors="coerce")
    down = table.loc[lfc < 0]
    return down.sort_values(padj_col, ascending=True, na_position="last", kind="mergesort")


def top_candidate(table: pd.DataFrame, id_col: str = "gene_id") -> str:
    """Gene id of the most significant down-regulated gene."""
    down = select_downregulated(table)
    if down.empty:
        raise EmptyInputError("No down-regulated genes in the result table.")
    return str(down.iloc[0][id_col])
