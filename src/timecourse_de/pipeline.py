"""
End-to-end analysis: load -> fit -> correct -> rank -> search.

:func:`run_pipeline` runs every stage for one :class:`AnalysisConfig` and
writes its outputs under ``config.out_dir``:

- ``de_results.csv``: one row per gene
- ``dispersions.csv``: gene-wise, trend and final dispersions
- ``downregulated.csv``: down-regulated genes, most significant first
- ``volcano.png``, ``ma.png``, ``dispersion.png`` when plotting is enabled
- ``blast_hits.csv`` for the top down-regulated gene when a FASTA file is
  configured

A failed BLAST search does not discard the expression results; it is
recorded on the returned :class:`PipelineResult`.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd

from .config import AnalysisConfig
from .diagnostics import sample_summary
from .exceptions import EmptyInputError, SearchUnavailable
from .io import load_counts_matrix, load_sample_design, write_results
from .metadata_setup import build_sample_design, design_frame, sample_design_from_columns
from .plots import dispersion_plot, ma_plot, volcano_plot
from .preprocess import filter_genes_by_total_counts
from .ranking import select_downregulated, top_candidate
from .results import DEResult, run_differential_expression
from .search import RankedHit, blast_search, load_sequences, sequence_for_gene

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    de: DEResult
    downregulated: pd.DataFrame
    top_gene: Optional[str] = None
    hits: list[RankedHit] = field(default_factory=list)
    search_error: Optional[SearchUnavailable] = None


def build_design(config: AnalysisConfig, counts: pd.DataFrame) -> pd.DataFrame:
    """Design table from the configured source, in count-column order."""
    samples = list(counts.columns)
    if config.design_file is not None:
        logger.info(f"Reading sample design from {config.design_file}")
        return load_sample_design(config.design_file)
    if config.layout:
        logger.info(f"Building sample design from {len(config.layout)} group layouts")
        return design_frame(build_sample_design(samples, config.layout))
    logger.info("Parsing sample design from column names")
    return design_frame(sample_design_from_columns(samples, spec=config.sample_parse))


def log_count_summary(counts: pd.DataFrame) -> None:
    for s, row in sample_summary(counts).iterrows():
        logger.info(
            f"{s}: total={int(row['total']):,} zero_fraction={row['zero_fraction']:.3f} "
            f"var/mean={row['var_over_mean']:.1f}"
        )


def run_search_stage(config: AnalysisConfig, ranked: pd.DataFrame, result: PipelineResult) -> None:
    try:
        result.top_gene = top_candidate(ranked)
    except EmptyInputError as e:
        logger.warning(f"Skipping similarity search: {e}")
        return

    logger.info(f"Top down-regulated gene: {result.top_gene}")
    if not config.run_search or config.fasta is None:
        logger.info("Similarity search disabled or no FASTA configured")
        return

    try:
        seq = sequence_for_gene(load_sequences(config.fasta), result.top_gene)
    except KeyError as e:
        logger.warning(f"Skipping similarity search: {e}")
        return

    try:
        result.hits = list(blast_search(seq, config.search))
    except SearchUnavailable as e:
        logger.error(f"Similarity search failed: {e}")
        result.search_error = e
        return

    logger.info(f"{len(result.hits)} BLAST hits for {result.top_gene}")
    hits_df = pd.DataFrame([dataclasses.asdict(h) for h in result.hits])
    write_results(hits_df, config.out_dir / "blast_hits.csv")


def run_pipeline(config: AnalysisConfig) -> PipelineResult:
    """Run every stage for ``config`` and write outputs to ``config.out_dir``."""
    counts = load_counts_matrix(config.counts, gene_id_col=config.gene_id_col)
    logger.info(f"Loaded counts: {counts.shape[0]} genes x {counts.shape[1]} samples")
    if config.min_total_count > 0:
        counts = filter_genes_by_total_counts(counts, min_total=config.min_total_count)
        logger.info(f"{counts.shape[0]} genes with >= {config.min_total_count} total counts")
    log_count_summary(counts)

    design = build_design(config, counts)

    de = run_differential_expression(
        counts,
        design,
        config.contrast,
        config.covariates,
        size_factor_method=config.size_factor_method,
        fit_type=config.fit_type,
        cooks_cutoff=config.cooks_cutoff,
        independent_filter=config.independent_filter,
        alpha=config.alpha,
        n_jobs=config.n_jobs,
    )
    n_sig = int((de.table["padj"] < config.alpha).sum())
    logger.info(f"{n_sig} genes with padj < {config.alpha:g} for {config.contrast}")

    out_dir = config.out_dir
    write_results(de.table, out_dir / "de_results.csv")
    write_results(de.dispersion_frame(), out_dir / "dispersions.csv", index=True)

    ranked = select_downregulated(de.table)
    write_results(ranked, out_dir / "downregulated.csv")
    logger.info(f"{len(ranked)} down-regulated genes")

    if config.plots:
        title = str(config.contrast)
        fig, _ = volcano_plot(de.table, alpha=config.alpha, title=title, outpath=out_dir / "volcano.png")
        plt.close(fig)
        fig, _ = ma_plot(de.table, alpha=config.alpha, title=title, outpath=out_dir / "ma.png")
        plt.close(fig)
        fig, _ = dispersion_plot(de.dispersion, title=title, outpath=out_dir / "dispersion.png")
        plt.close(fig)

    result = PipelineResult(de=de, downregulated=ranked)
    run_search_stage(config, ranked, result)
    return result
