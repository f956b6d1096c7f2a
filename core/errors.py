"""Exception hierarchy for constrained regression runs.

Every error is terminal for the run that raised it; callers adjust inputs
(for example drop a redundant constraint) and re-run.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ConfigurationError",
    "DataAccessError",
    "NumericalError",
    "RegressionError",
    "SingularSystemError",
]


class RegressionError(Exception):
    """Base class for all kktreg errors."""


class ConfigurationError(RegressionError, ValueError):
    """Malformed model specification or solver configuration."""


class DataAccessError(RegressionError, LookupError):
    """A row or column expected in the tabular source is missing."""


class NumericalError(RegressionError, ArithmeticError):
    """Non-finite intermediates, zero total weight, or failed verification."""


class SingularSystemError(NumericalError):
    """The augmented (bordered) matrix is not invertible.

    Attributes
    ----------
    n_regressors, n_constraints : int
        Block dimensions ``p`` and ``m`` of the augmented system.
    block : str
        ``"constraints"`` when the constraint rows are linearly dependent
        (redundant or contradictory constraints); ``"gram"`` when the
        regressors are not identified on the constraint null space
        (collinear regressors or too few distinct observations).
    gram_rank, constraint_rank : int or None
        Numerical ranks of ``X'WX`` and ``C``.
    redundant_constraints : tuple of int
        Positions of constraint rows that are combinations of earlier rows.
    rcond : float or None
        Reciprocal condition estimate of the augmented matrix (1-norm).
    """

    def __init__(
        self,
        message: str,
        *,
        n_regressors: int | None = None,
        n_constraints: int | None = None,
        block: str | None = None,
        gram_rank: int | None = None,
        constraint_rank: int | None = None,
        redundant_constraints: tuple[int, ...] = (),
        rcond: float | None = None,
    ) -> None:
        super().__init__(message)
        self.n_regressors = n_regressors
        self.n_constraints = n_constraints
        self.block = block
        self.gram_rank = gram_rank
        self.constraint_rank = constraint_rank
        self.redundant_constraints = tuple(redundant_constraints)
        self.rcond = rcond

    def context(self) -> dict[str, Any]:
        """Return the diagnostic context as a plain dict."""
        return {
            "n_regressors": self.n_regressors,
            "n_constraints": self.n_constraints,
            "block": self.block,
            "gram_rank": self.gram_rank,
            "constraint_rank": self.constraint_rank,
            "redundant_constraints": self.redundant_constraints,
            "rcond": self.rcond,
        }
