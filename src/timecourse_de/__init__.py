"""
timecourse-de: Differential expression over a stimulus time course.

This package tests RNA-seq count data for genes whose expression changes
between two conditions using per-gene negative binomial generalized linear
models (GLMs) with trend-shrunk dispersions, and runs a BLAST similarity
search for the most significant down-regulated gene.

Modules
-------
io
    Count matrix and design table loading, result writing.
metadata_setup
    Sample design construction and validation.
preprocess
    Size factors and gene filters.
diagnostics
    Moment-based dispersion estimates and count summaries.
dispersion
    Gene-wise, trend and MAP dispersion estimation.
model
    Design matrices and per-gene negative binomial GLM fits.
contrasts
    Wald contrast computations for factor levels.
stats
    Benjamini-Hochberg FDR correction and independent filtering.
results
    Differential expression for one contrast.
ranking
    Down-regulated gene selection.
search
    NCBI BLAST client.
plots
    Visualization functions (volcano, MA, dispersion plots).
config
    YAML analysis configuration.
pipeline
    End-to-end run writing all outputs.

Example
-------
>>> import timecourse_de as tde
>>> counts = tde.load_counts_matrix("data/counts.csv")
>>> records = tde.build_sample_design(
...     counts.columns,
...     [tde.GroupLayout("control", 3, "0h"), tde.GroupLayout("stimulus", 3, "6h")],
... )
>>> res = tde.run_differential_expression(
...     counts, tde.design_frame(records), tde.Contrast("group", "stimulus", "control")
... )
>>> tde.select_downregulated(res.table).head()
"""

__version__ = "0.1.0"

# config
from .config import (
    AnalysisConfig,
    config_from_dict,
    load_config,
)

# contrasts
from .contrasts import (
    level_contrast,
    wald_contrast,
)

# dispersion
from .dispersion import (
    DispersionModel,
    estimate_dispersions,
    fit_dispersion_trend,
)

# exceptions
from .exceptions import (
    ConvergenceFailure,
    EmptyInputError,
    InputValidationError,
    InvalidDesign,
    SearchUnavailable,
)

# io
from .io import (
    load_counts_matrix,
    load_sample_design,
    write_results,
)

# metadata_setup
from .metadata_setup import (
    Contrast,
    GroupLayout,
    SampleParseSpec,
    SampleRecord,
    build_sample_design,
    design_frame,
    sample_design_from_columns,
    split_sample_id,
    validate_design,
)

# model
from .model import (
    GeneFit,
    build_design_matrix,
    fit_genes,
)

# plots
from .plots import (
    dispersion_plot,
    ma_plot,
    volcano_plot,
)

# preprocess
from .preprocess import (
    estimate_size_factors,
    filter_genes_by_total_counts,
    normalized_counts,
)

# ranking
from .ranking import (
    select_downregulated,
    significant,
    top_candidate,
)

# results
from .results import (
    DEResult,
    run_differential_expression,
)

# search
from .search import (
    RankedHit,
    SearchParams,
    blast_search,
    load_sequences,
)

# stats
from .stats import (
    bh_fdr,
    independent_filtering,
)

__all__ = [
    # config
    "AnalysisConfig",
    "config_from_dict",
    "load_config",
    # contrasts
    "level_contrast",
    "wald_contrast",
    # dispersion
    "DispersionModel",
    "estimate_dispersions",
    "fit_dispersion_trend",
    # exceptions
    "ConvergenceFailure",
    "EmptyInputError",
    "InputValidationError",
    "InvalidDesign",
    "SearchUnavailable",
    # io
    "load_counts_matrix",
    "load_sample_design",
    "write_results",
    # metadata_setup
    "Contrast",
    "GroupLayout",
    "SampleParseSpec",
    "SampleRecord",
    "build_sample_design",
    "design_frame",
    "sample_design_from_columns",
    "split_sample_id",
    "validate_design",
    # model
    "GeneFit",
    "build_design_matrix",
    "fit_genes",
    # plots
    "dispersion_plot",
    "ma_plot",
    "volcano_plot",
    # preprocess
    "estimate_size_factors",
    "filter_genes_by_total_counts",
    "normalized_counts",
    # ranking
    "select_downregulated",
    "significant",
    "top_candidate",
    # results
    "DEResult",
    "run_differential_expression",
    # search
    "RankedHit",
    "SearchParams",
    "blast_search",
    "load_sequences",
    # stats
    "bh_fdr",
    "independent_filtering",
]
