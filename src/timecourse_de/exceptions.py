"""
Error kinds raised by the analysis stages.

Input and design problems abort the run before any model is fitted.
Per-gene fitting problems are collected as :class:`ConvergenceFailure`
records and never abort the whole matrix. Search failures are kept
separate so a caller can still use the differential expression output.
"""
from __future__ import annotations


class InputValidationError(ValueError):
    """Raised when a count matrix or design table is malformed."""
    pass


class InvalidDesign(InputValidationError):
    """Raised when the sample design cannot support the requested contrast."""
    pass


class EmptyInputError(ValueError):
    """Raised when no gene is eligible for a stage that needs at least one."""
    pass


class ConvergenceFailure(RuntimeError):
    """Per-gene model fit failure.

    Instances are recorded in :attr:`DEResult.failures` rather than raised
    out of the fitting loop.
    """

    def __init__(self, gene_id: str, reason: str):
        super().__init__(f"{gene_id}: {reason}")
        self.gene_id = gene_id
        self.reason = reason


class SearchUnavailable(RuntimeError):
    """Raised when the remote similarity search fails or times out."""
    pass
