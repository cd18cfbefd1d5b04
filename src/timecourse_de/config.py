"""
Analysis configuration.

A run is described by an :class:`AnalysisConfig`, usually read from a
YAML file::

    counts: data/counts.csv
    gene_id_col: gene_id
    out_dir: results
    layout:
      - {group: control, replicates: 3, time_point: 0h}
      - {group: stimulus, replicates: 3, time_point: 6h}
    contrast: {factor: group, numerator: stimulus, denominator: control}
    search:
      fasta: data/transcripts.fa
      database: nt
      expect_value: 0.001

Exactly one design source is used, in order of preference: ``design_file``,
``layout``, then sample ids parsed from the count column names.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import InputValidationError
from .metadata_setup import Contrast, GroupLayout, SampleParseSpec
from .search import SearchParams


@dataclass(frozen=True)
class AnalysisConfig:
    counts: Path
    contrast: Contrast
    out_dir: Path = Path("results")
    gene_id_col: Optional[str] = None
    design_file: Optional[Path] = None
    layout: tuple[GroupLayout, ...] = ()
    sample_parse: SampleParseSpec = SampleParseSpec()
    covariates: tuple[str, ...] = ()
    size_factor_method: str = "ratio"
    fit_type: str = "parametric"
    #: True for the F(p, m - p) 0.99 quantile, a number for a fixed cutoff,
    #: False or None to skip the outlier filter.
    cooks_cutoff: Optional[float | bool] = True
    independent_filter: bool = False
    alpha: float = 0.05
    min_total_count: int = 0
    n_jobs: Optional[int] = 1
    plots: bool = True
    fasta: Optional[Path] = None
    run_search: bool = True
    search: SearchParams = field(default_factory=SearchParams)


def _build(cls, data: dict, where: str):
    if not isinstance(data, dict):
        raise InputValidationError(f"'{where}' must be a mapping, got {type(data).__name__}.")
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise InputValidationError(f"Unknown keys in '{where}': {unknown}")
    try:
        return cls(**data)
    except TypeError as e:
        raise InputValidationError(f"Invalid '{where}': {e}") from e


def config_from_dict(data: dict, base_dir: Optional[Path] = None) -> AnalysisConfig:
    """Build an :class:`AnalysisConfig` from plain data (e.g. parsed YAML).

    Relative paths are resolved against ``base_dir`` when given.
    """
    data = dict(data or {})
    base_dir = Path(base_dir) if base_dir is not None else None

    def path(value):
        if value is None:
            return None
        p = Path(value)
        return base_dir / p if base_dir is not None and not p.is_absolute() else p

    for key in ("counts", "contrast"):
        if key not in data:
            raise InputValidationError(f"Configuration is missing '{key}'.")

    search = dict(data.pop("search", None) or {})
    fasta = search.pop("fasta", data.pop("fasta", None))
    run_search = search.pop("enabled", data.pop("run_search", True))

    data["counts"] = path(data["counts"])
    data["out_dir"] = path(data.get("out_dir", "results"))
    data["design_file"] = path(data.get("design_file"))
    data["contrast"] = _build(Contrast, data["contrast"], "contrast")
    data["layout"] = tuple(_build(GroupLayout, lay, "layout") for lay in data.get("layout") or ())
    if "sample_parse" in data:
        spec = dict(data["sample_parse"])
        if "fields" in spec:
            spec["fields"] = tuple(spec["fields"])
        data["sample_parse"] = _build(SampleParseSpec, spec, "sample_parse")
    data["covariates"] = tuple(data.get("covariates") or ())
    cutoff = data.get("cooks_cutoff", True)
    if cutoff is not None and not isinstance(cutoff, (bool, int, float)):
        raise InputValidationError(f"'cooks_cutoff' must be true, false, null or a number, got {cutoff!r}.")

    return _build(
        AnalysisConfig,
        {**data, "fasta": path(fasta), "run_search": bool(run_search),
         "search": _build(SearchParams, search, "search")},
        "config",
    )


def load_config(config_path: str | Path) -> AnalysisConfig:
    """Read a YAML configuration file; paths are relative to the file."""
    config_path = Path(config_path)
    with open(config_path) as f:
        data = yaml.safe_load(f)
    return config_from_dict(data or {}, base_dir=config_path.parent)
