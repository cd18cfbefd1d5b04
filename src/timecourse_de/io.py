from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from .exceptions import InputValidationError

logger = logging.getLogger(__name__)

_EXCEL_SUFFIXES = {".xlsx", ".xls"}
_TAB_SUFFIXES = {".tsv", ".tab", ".txt"}


def _read_table(path: Path, sep: Optional[str] = None, sheet_name: str | int = 0) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".gz":
        suffix = Path(path.stem).suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        return pd.read_excel(path, sheet_name=sheet_name)
    if sep is None:
        sep = "\t" if suffix in _TAB_SUFFIXES else ","
    return pd.read_csv(path, sep=sep)


def load_counts_matrix(
    counts_path: str | Path,
    gene_id_col: Optional[str] = None,
    sep: Optional[str] = None,
    sheet_name: str | int = 0,
) -> pd.DataFrame:
    """
    Reads a gene-by-sample count table (CSV, TSV or Excel).

    Expected:
      - one column holding gene IDs (``gene_id_col``; first column if None).
      - remaining columns are sample_ids, values are raw integer counts.

    Columns that hold no numeric values at all (annotation columns such as
    gene symbols) are dropped. Rows with a missing or non-numeric count are
    dropped, as are repeated gene IDs (first occurrence kept).
    """
    counts_path = Path(counts_path)
    df = _norm_cols(_read_table(counts_path, sep=sep, sheet_name=sheet_name))

    if gene_id_col is not None:
        if gene_id_col not in df.columns:
            raise InputValidationError(f"{counts_path} missing '{gene_id_col}' column.")
        id_col = gene_id_col
    elif len(df.columns) > 0:
        id_col = df.columns[0]
    else:
        raise InputValidationError(f"{counts_path} has no columns.")

    df = df.dropna(subset=[id_col])
    df[id_col] = df[id_col].astype(str).str.strip()
    df = df.set_index(id_col)
    df.index.name = "gene_id"

    return clean_counts(df, source=str(counts_path))


def clean_counts(df: pd.DataFrame, source: str = "count matrix") -> pd.DataFrame:
    """Coerce a labelled table to a validated integer count matrix.

    The input is not modified.
    """
    numeric = df.apply(pd.to_numeric, errors="coerce")

    # annotation columns: nothing parses as a number
    text_cols = [c for c in numeric.columns if numeric[c].isna().all()]
    if text_cols:
        logger.info(f"Dropping {len(text_cols)} non-numeric columns from {source}: {text_cols}")
        numeric = numeric.drop(columns=text_cols)

    if numeric.shape[1] == 0:
        raise InputValidationError(f"{source} has no numeric sample columns.")
    if numeric.columns.duplicated().any():
        dup = numeric.columns[numeric.columns.duplicated()].tolist()
        raise InputValidationError(f"{source} has duplicated sample columns: {dup}")

    n_before = len(numeric)
    numeric = numeric.dropna(axis=0, how="any")
    numeric = numeric[~numeric.index.duplicated(keep="first")]
    n_dropped = n_before - len(numeric)
    if n_dropped:
        logger.info(f"Dropped {n_dropped} rows with missing values or repeated gene IDs from {source}")

    if numeric.empty:
        raise InputValidationError(f"{source} has no complete rows after cleaning.")

    values = numeric.to_numpy(dtype=float)
    if (values < 0).any():
        raise InputValidationError(f"{source} contains negative counts.")
    if not np.all(np.isfinite(values)) or not np.all(values == np.round(values)):
        raise InputValidationError(f"{source} contains non-integer counts.")

    out = numeric.astype(np.int64)
    out.index = out.index.astype(str)
    out.index.name = "gene_id"
    out.columns = [str(c) for c in out.columns]
    return out


def load_sample_design(
    design_path: str | Path,
    sample_id_col: str = "sample_id",
    sheet_name: str | int = 0,
) -> pd.DataFrame:
    """
    Reads a design table with one row per sample.

    Expected columns:
      sample_id, group; optional time_point, replicate and covariates.
    """
    design_path = Path(design_path)
    design = _norm_cols(_read_table(design_path, sheet_name=sheet_name))

    if sample_id_col not in design.columns:
        # index column written by DataFrame.to_csv / to_excel
        for candidate in ["Unnamed: 0", "index"]:
            if candidate in design.columns:
                sample_id_col = candidate
                break
        else:
            raise InputValidationError(f"{design_path} missing '{sample_id_col}' column.")

    design[sample_id_col] = design[sample_id_col].astype(str).str.strip()
    if design[sample_id_col].duplicated().any():
        dup = design.loc[design[sample_id_col].duplicated(), sample_id_col].tolist()
        raise InputValidationError(f"{design_path} lists samples more than once: {dup}")

    design = design.set_index(sample_id_col)
    design.index.name = "sample_id"
    return design


def write_results(table: pd.DataFrame, out_path: str | Path, index: bool = False) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    suffix = out_path.suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        table.to_excel(out_path, index=index)
    elif suffix in _TAB_SUFFIXES:
        table.to_csv(out_path, sep="\t", index=index)
    else:
        table.to_csv(out_path, index=index)
    logger.info(f"Results saved to {out_path}")
    return out_path


def _norm_col(c: object) -> str:
    # strip whitespace; preserve internal chars
    return str(c).strip()


def _norm_cols(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [_norm_col(c) for c in df.columns]
    return df
