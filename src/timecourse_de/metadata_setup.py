# timecourse_de/metadata_setup.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import pandas as pd

from .exceptions import InvalidDesign


@dataclass(frozen=True)
class GroupLayout:
    """One experimental arm: ``replicates`` consecutive samples of ``group``."""

    group: str
    replicates: int
    time_point: Optional[str] = None


@dataclass(frozen=True)
class SampleRecord:
    sample_id: str
    group: str
    time_point: Optional[str] = None
    replicate: Optional[int] = None
    covariates: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SampleParseSpec:
    sep: str = "_"
    fields: tuple[str, ...] = ("group", "time_point", "replicate")


@dataclass(frozen=True)
class Contrast:
    """Pairwise comparison ``numerator`` vs ``denominator`` within ``factor``.

    The reported log2 fold change is log2(numerator / denominator).
    """

    factor: str
    numerator: str
    denominator: str

    def __str__(self) -> str:
        return f"{self.factor}: {self.numerator} vs {self.denominator}"


def build_sample_design(
        sample_ids: Sequence[str],
        layouts: Iterable[GroupLayout],
) -> list[SampleRecord]:
    """
    Expand compact group layouts into one design record per sample.

    Layouts are consumed in order and matched against ``sample_ids`` in
    column order, so ``[GroupLayout("ctrl", 2), GroupLayout("stim", 2)]``
    assigns the first two columns to ``ctrl`` and the next two to ``stim``.
    Replicate numbers restart at 1 for every layout.

    Raises
    ------
    InvalidDesign
        If the layouts describe a different number of samples than given,
        or a layout has fewer than one replicate.
    """
    sample_ids = [str(s) for s in sample_ids]
    layouts = list(layouts)

    for lay in layouts:
        if int(lay.replicates) < 1:
            raise InvalidDesign(f"Group '{lay.group}' must have at least one replicate.")

    total = sum(int(lay.replicates) for lay in layouts)
    if total != len(sample_ids):
        raise InvalidDesign(
            f"Group layouts describe {total} samples but the count matrix has {len(sample_ids)}."
        )

    records = []
    it = iter(sample_ids)
    for lay in layouts:
        for rep in range(1, int(lay.replicates) + 1):
            records.append(
                SampleRecord(
                    sample_id=next(it),
                    group=str(lay.group),
                    time_point=None if lay.time_point is None else str(lay.time_point),
                    replicate=rep,
                )
            )
    return records


def split_sample_id(
    sample_id: str,
    spec: SampleParseSpec = SampleParseSpec(),
    strict: bool = True,
) -> dict[str, object]:
    """
    Split a sample_id like:
      group_timepoint_replicate
    using spec.sep into spec.fields.

    If strict=True, raises if the number of tokens != len(fields).
    """
    sid = str(sample_id).strip()
    toks = sid.split(spec.sep)

    if strict and len(toks) != len(spec.fields):
        raise InvalidDesign(
            f"Sample ID '{sid}' split by '{spec.sep}' yielded {len(toks)} tokens "
            f"(expected {len(spec.fields)}). Tokens={toks}"
        )

    # best-effort if non-strict
    toks = (toks + [""] * len(spec.fields))[: len(spec.fields)]
    out = {"sample_id": sid}
    out.update({k: v for k, v in zip(spec.fields, toks)})

    return out


def sample_design_from_columns(
    sample_ids: Sequence[str],
    spec: SampleParseSpec = SampleParseSpec(),
    strict: bool = True,
) -> list[SampleRecord]:
    """Parse design records from structured sample column names."""
    known = {"group", "time_point", "replicate"}
    records = []
    for sid in sample_ids:
        parsed = split_sample_id(sid, spec=spec, strict=strict)
        # "3", "r3" and "rep3" all name replicate 3
        m = re.search(r"(\d+)$", str(parsed.get("replicate", "")))
        records.append(
            SampleRecord(
                sample_id=str(parsed["sample_id"]),
                group=str(parsed.get("group", "")),
                time_point=parsed.get("time_point") or None,
                replicate=int(m.group(1)) if m else None,
                covariates={k: v for k, v in parsed.items() if k not in known | {"sample_id"}},
            )
        )
    return records


def design_frame(records: Iterable[SampleRecord]) -> pd.DataFrame:
    """Tabulate design records, one row per sample indexed by sample_id."""
    rows = []
    for r in records:
        row = {
            "sample_id": r.sample_id,
            "group": r.group,
            "time_point": r.time_point,
            "replicate": r.replicate,
        }
        row.update(r.covariates)
        rows.append(row)
    if not rows:
        raise InvalidDesign("Design has no samples.")

    design = pd.DataFrame(rows)
    if design["sample_id"].duplicated().any():
        dup = design.loc[design["sample_id"].duplicated(), "sample_id"].tolist()
        raise InvalidDesign(f"Samples listed more than once in design: {dup}")
    design = design.set_index("sample_id")
    # drop descriptive columns nobody filled in
    design = design.dropna(axis=1, how="all")
    return design


def validate_design(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    contrast: Contrast,
    covariates: Sequence[str] = (),
) -> pd.DataFrame:
    """Check that ``design`` supports ``contrast`` on the columns of ``counts``.

    Returns the design rows reordered to match the count matrix columns.

    Raises
    ------
    InvalidDesign
        If a sample has no design record or no label for the contrast
        factor, fewer than two levels exist, or either contrast level has
        no samples.
    """
    if contrast.numerator == contrast.denominator:
        raise InvalidDesign(f"Contrast compares '{contrast.numerator}' with itself.")

    for col in [contrast.factor, *covariates]:
        if col not in design.columns:
            raise InvalidDesign(f"Design has no '{col}' column.")

    samples = [str(c) for c in counts.columns]
    missing = [s for s in samples if s not in design.index]
    if missing:
        raise InvalidDesign(f"Samples without a design record: {missing}")

    design = design.loc[samples]

    for col in [contrast.factor, *covariates]:
        labels = design[col]
        unlabeled = labels[labels.isna() | (labels.astype(str).str.strip() == "")].index.tolist()
        if unlabeled:
            raise InvalidDesign(f"Samples without a '{col}' label: {unlabeled}")

    levels = design[contrast.factor].astype(str)
    n_levels = levels.nunique()
    if n_levels < 2:
        raise InvalidDesign(
            f"Factor '{contrast.factor}' has {n_levels} level(s); at least two are required."
        )

    for lvl in (contrast.numerator, contrast.denominator):
        if (levels == str(lvl)).sum() == 0:
            raise InvalidDesign(
                f"Contrast level '{lvl}' has no samples in factor '{contrast.factor}'."
            )

    return design
