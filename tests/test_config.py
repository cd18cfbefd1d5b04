from pathlib import Path

import pytest

from timecourse_de.config import AnalysisConfig, config_from_dict, load_config
from timecourse_de.exceptions import InputValidationError
from timecourse_de.metadata_setup import Contrast, GroupLayout, SampleParseSpec
from timecourse_de.search import SearchParams

CONFIG = """\
counts: data/counts.csv
out_dir: out
layout:
  - {group: ctrl, replicates: 3, time_point: 0h}
  - {group: stim, replicates: 3, time_point: 6h}
contrast: {factor: group, numerator: stim, denominator: ctrl}
alpha: 0.01
n_jobs: 4
search:
  fasta: data/genes.fa
  database: refseq_rna
  expect_value: 0.001
"""


def test_load_config_resolves_paths(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text(CONFIG)
    config = load_config(path)

    assert isinstance(config, AnalysisConfig)
    assert config.counts == tmp_path / "data" / "counts.csv"
    assert config.out_dir == tmp_path / "out"
    assert config.fasta == tmp_path / "data" / "genes.fa"
    assert config.contrast == Contrast("group", "stim", "ctrl")
    assert config.layout == (GroupLayout("ctrl", 3, "0h"), GroupLayout("stim", 3, "6h"))
    assert config.search == SearchParams(database="refseq_rna", expect_value=0.001)
    assert config.alpha == 0.01
    assert config.n_jobs == 4
    assert config.run_search


def test_defaults():
    config = config_from_dict(
        {"counts": "counts.csv", "contrast": {"factor": "group", "numerator": "b", "denominator": "a"}}
    )
    assert config.counts == Path("counts.csv")
    assert config.out_dir == Path("results")
    assert config.design_file is None
    assert config.fasta is None
    assert config.sample_parse == SampleParseSpec()
    assert config.fit_type == "parametric"
    assert config.search == SearchParams()


def test_sample_parse_and_search_switch():
    config = config_from_dict(
        {
            "counts": "counts.csv",
            "contrast": {"factor": "group", "numerator": "b", "denominator": "a"},
            "sample_parse": {"sep": "-", "fields": ["group", "replicate"]},
            "covariates": ["time_point"],
            "search": {"enabled": False},
        }
    )
    assert config.sample_parse == SampleParseSpec(sep="-", fields=("group", "replicate"))
    assert config.covariates == ("time_point",)
    assert not config.run_search


@pytest.mark.parametrize(
    "data, message",
    [
        ({"contrast": {"factor": "g", "numerator": "b", "denominator": "a"}}, "counts"),
        ({"counts": "c.csv"}, "contrast"),
        ({"counts": "c.csv", "contrast": {"factor": "g", "numerator": "b"}}, "contrast"),
        (
            {"counts": "c.csv", "contrast": {"factor": "g", "numerator": "b", "denominator": "a"}, "alhpa": 0.1},
            "alhpa",
        ),
        (
            {
                "counts": "c.csv",
                "contrast": {"factor": "g", "numerator": "b", "denominator": "a"},
                "search": {"hitlist": 5},
            },
            "hitlist",
        ),
    ],
)
def test_invalid_config(data, message):
    with pytest.raises(InputValidationError, match=message):
        config_from_dict(data)


@pytest.mark.parametrize("value", [True, False, None, 4.5])
def test_cooks_cutoff_values(value):
    config = config_from_dict(
        {
            "counts": "counts.csv",
            "contrast": {"factor": "group", "numerator": "b", "denominator": "a"},
            "cooks_cutoff": value,
        }
    )
    assert config.cooks_cutoff is value or config.cooks_cutoff == value


def test_cooks_cutoff_rejects_text():
    with pytest.raises(InputValidationError, match="cooks_cutoff"):
        config_from_dict(
            {
                "counts": "counts.csv",
                "contrast": {"factor": "group", "numerator": "b", "denominator": "a"},
                "cooks_cutoff": "strict",
            }
        )
