import dataclasses

import pandas as pd
import pytest

import timecourse_de.pipeline as pipeline_mod
from timecourse_de.cli import EXIT_EMPTY, EXIT_INPUT, EXIT_SEARCH, main
from timecourse_de.config import AnalysisConfig
from timecourse_de.exceptions import SearchUnavailable
from timecourse_de.metadata_setup import Contrast, GroupLayout
from timecourse_de.pipeline import run_pipeline
from timecourse_de.search import RankedHit

from conftest import simulate_counts

HIT = RankedHit("NM_006139", "Homo sapiens CD28 molecule", 120.0, 2e-22, 111.0, 100.0, 60)


@pytest.fixture
def workspace(tmp_path):
    counts, _, _ = simulate_counts(n_genes=60, n_down=8, seed=21)
    counts.to_csv(tmp_path / "counts.csv")
    records = [f">{g}\nATGCTCAGGCTGCTCTTGGCTCTC\n" for g in counts.index]
    (tmp_path / "genes.fa").write_text("".join(records))
    return tmp_path, counts


@pytest.fixture
def config(workspace):
    tmp_path, _ = workspace
    return AnalysisConfig(
        counts=tmp_path / "counts.csv",
        contrast=Contrast("group", "stim", "ctrl"),
        out_dir=tmp_path / "out",
        layout=(GroupLayout("ctrl", 3, "0h"), GroupLayout("stim", 3, "6h")),
        fasta=tmp_path / "genes.fa",
    )


def _write_yaml(path, counts_path, out_dir):
    path.write_text(
        f"counts: {counts_path}\n"
        f"out_dir: {out_dir}\n"
        "contrast: {factor: group, numerator: stim, denominator: ctrl}\n"
        "plots: false\n"
        "search: {enabled: false}\n"
    )


def test_pipeline_writes_outputs(config, monkeypatch):
    queries = []

    def fake_search(sequence, params):
        queries.append(sequence)
        return iter([HIT])

    monkeypatch.setattr(pipeline_mod, "blast_search", fake_search)
    result = run_pipeline(config)

    out = config.out_dir
    for name in ["de_results.csv", "dispersions.csv", "downregulated.csv",
                 "volcano.png", "ma.png", "dispersion.png", "blast_hits.csv"]:
        assert (out / name).exists(), name

    table = pd.read_csv(out / "de_results.csv")
    assert list(table.columns) == ["gene_id", "baseMean", "log2FoldChange", "lfcSE", "statistic", "pvalue", "padj"]
    assert len(table) == 60

    assert result.top_gene == result.downregulated.iloc[0]["gene_id"]
    assert queries == ["ATGCTCAGGCTGCTCTTGGCTCTC"]
    assert result.hits == [HIT]
    assert result.search_error is None
    hits = pd.read_csv(out / "blast_hits.csv")
    assert hits.loc[0, "accession"] == "NM_006139"


def test_search_failure_keeps_results(config, monkeypatch):
    def failing_search(sequence, params):
        raise SearchUnavailable("BLAST search failed: connection reset")

    monkeypatch.setattr(pipeline_mod, "blast_search", failing_search)
    result = run_pipeline(dataclasses.replace(config, plots=False))

    assert isinstance(result.search_error, SearchUnavailable)
    assert result.hits == []
    assert (config.out_dir / "de_results.csv").exists()
    assert not (config.out_dir / "blast_hits.csv").exists()


def test_search_disabled(config, monkeypatch):
    def unexpected(*args, **kwargs):
        raise AssertionError("search should not run")

    monkeypatch.setattr(pipeline_mod, "blast_search", unexpected)
    result = run_pipeline(dataclasses.replace(config, run_search=False, plots=False))
    assert result.top_gene is not None
    assert result.hits == []


def test_design_parsed_from_column_names(config):
    result = run_pipeline(dataclasses.replace(config, layout=(), run_search=False, plots=False))
    assert result.de.design_columns[-1].endswith("[T.stim]")


def test_cli_success(workspace, tmp_path):
    yaml_path = tmp_path / "analysis.yaml"
    _write_yaml(yaml_path, tmp_path / "counts.csv", tmp_path / "cli_out")
    assert main(["--config", str(yaml_path)]) == 0
    assert (tmp_path / "cli_out" / "de_results.csv").exists()


def test_cli_overrides_output_dir(workspace, tmp_path):
    yaml_path = tmp_path / "analysis.yaml"
    _write_yaml(yaml_path, tmp_path / "counts.csv", tmp_path / "cli_out")
    assert main(["--config", str(yaml_path), "--out", str(tmp_path / "other")]) == 0
    assert (tmp_path / "other" / "de_results.csv").exists()


def test_cli_invalid_design(workspace, tmp_path):
    yaml_path = tmp_path / "analysis.yaml"
    yaml_path.write_text(
        f"counts: {tmp_path / 'counts.csv'}\n"
        "contrast: {factor: group, numerator: knockdown, denominator: ctrl}\n"
        "search: {enabled: false}\n"
    )
    assert main(["--config", str(yaml_path)]) == EXIT_INPUT


def test_cli_all_zero_counts(tmp_path):
    counts, _, _ = simulate_counts(n_genes=5, n_down=0)
    (counts * 0).to_csv(tmp_path / "zeros.csv")
    yaml_path = tmp_path / "analysis.yaml"
    _write_yaml(yaml_path, tmp_path / "zeros.csv", tmp_path / "out")
    assert main(["--config", str(yaml_path), "--no-plots"]) == EXIT_EMPTY


def test_cli_search_failure(config, tmp_path, monkeypatch):
    def failing_search(sequence, params):
        raise SearchUnavailable("BLAST search timed out after 600 s")

    monkeypatch.setattr(pipeline_mod, "blast_search", failing_search)
    yaml_path = tmp_path / "analysis.yaml"
    yaml_path.write_text(
        f"counts: {config.counts}\n"
        f"out_dir: {tmp_path / 'out'}\n"
        "contrast: {factor: group, numerator: stim, denominator: ctrl}\n"
        "plots: false\n"
        f"search: {{fasta: {config.fasta}}}\n"
    )
    assert main(["--config", str(yaml_path)]) == EXIT_SEARCH
