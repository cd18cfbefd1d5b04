"""
Command-line entry point.

Usage:
    timecourse-de --config analysis.yaml
    timecourse-de --config analysis.yaml --out results/run2 --n-jobs 8 --no-search
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import load_config
from .exceptions import EmptyInputError, InputValidationError
from .pipeline import run_pipeline

logger = logging.getLogger(__name__)

EXIT_INPUT = 2
EXIT_EMPTY = 3
EXIT_SEARCH = 4


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Differential expression over a stimulus time course, "
                    "with a BLAST search for the top down-regulated gene"
    )

    parser.add_argument(
        "-c", "--config",
        required=True,
        type=Path,
        help="Path to the YAML analysis configuration",
    )
    parser.add_argument(
        "--counts",
        type=Path,
        default=None,
        help="Count matrix path (overrides the configuration)",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Output directory (overrides the configuration)",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=None,
        help="Number of processes for per-gene fits",
    )
    parser.add_argument(
        "--no-search",
        action="store_true",
        help="Skip the BLAST search",
    )
    parser.add_argument(
        "--no-plots",
        action="store_true",
        help="Skip plotting",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line interface for :func:`run_pipeline`."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
        overrides = {}
        if args.counts is not None:
            overrides["counts"] = args.counts
        if args.out is not None:
            overrides["out_dir"] = args.out
        if args.n_jobs is not None:
            overrides["n_jobs"] = args.n_jobs
        if args.no_search:
            overrides["run_search"] = False
        if args.no_plots:
            overrides["plots"] = False
        config = dataclasses.replace(config, **overrides)

        result = run_pipeline(config)
    except InputValidationError as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_INPUT
    except EmptyInputError as e:
        logger.error(f"Nothing to analyse: {e}")
        return EXIT_EMPTY

    if result.search_error is not None:
        return EXIT_SEARCH
    return 0


if __name__ == "__main__":
    sys.exit(main())
