"""Model specification, solver configuration and result container.

This module defines the immutable regression specification, the solver
configuration shared by estimators, and the standardized result object that
splits the bordered-system solution into coefficients and multipliers.
"""

# kktreg/estimators/base.py
from __future__ import annotations

import os
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from kktreg.core import system as ks
from kktreg.core.errors import ConfigurationError
from kktreg.utils.constraints import coerce_constraints, expand_constraints

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from kktreg.utils.constraints import LinearConstraint

__all__ = [
    "N_CHUNKS_ENV",
    "ModelSpec",
    "RegressionResult",
    "SolverConfig",
]

N_CHUNKS_ENV = "KKTREG_N_CHUNKS"


# ---------------------------------------------------------------------
# Specification
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ModelSpec:
    """Immutable description of a constrained weighted regression.

    Parameters
    ----------
    regressand : Hashable
        Column key of the dependent variable.
    regressors : Sequence[Hashable]
        Ordered, pairwise distinct regressor keys. The order fixes the
        column order of the design matrix and of the coefficient vector.
    constraints : LinearConstraint, str, tuple or iterable thereof, optional
        Linear equalities on the coefficients. Strings such as
        ``"Size + 2*Value = 3; Tech + Energy + Utility = 0"`` are parsed
        against the regressor names.
    weight : Hashable, optional
        Column key of the observation weights. Without it every row
        weighs 1.

    """

    regressand: Hashable
    regressors: tuple[Hashable, ...]
    constraints: tuple[LinearConstraint, ...] = ()
    weight: Hashable | None = None

    def __post_init__(self) -> None:
        if self.regressand is None:
            raise ConfigurationError("A regressand key is required.")
        regs = self.regressors
        if isinstance(regs, (str, bytes)) or not isinstance(regs, Iterable):
            regs = (regs,)
        regs = tuple(regs)
        if not regs:
            raise ConfigurationError("At least one regressor is required.")
        seen: set[Hashable] = set()
        for key in regs:
            try:
                dup = key in seen
            except TypeError as exc:
                msg = f"Regressor keys must be hashable; got {key!r}."
                raise ConfigurationError(msg) from exc
            if dup:
                msg = f"Duplicate regressor key '{key}'."
                raise ConfigurationError(msg)
            seen.add(key)
        cons = coerce_constraints(self.constraints, regs)
        # raises ConfigurationError for keys outside the regressor set
        expand_constraints(cons, regs)
        object.__setattr__(self, "regressors", regs)
        object.__setattr__(self, "constraints", cons)

    @property
    def n_regressors(self) -> int:
        return len(self.regressors)

    @property
    def n_constraints(self) -> int:
        return len(self.constraints)

    @property
    def constraint_labels(self) -> tuple[str, ...]:
        return tuple(con.describe() for con in self.constraints)

    def constraint_matrix(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Dense ``(C, d)`` over the regressor order."""
        return expand_constraints(self.constraints, self.regressors)


# ---------------------------------------------------------------------
# Solver configuration
# ---------------------------------------------------------------------
def _env_n_chunks() -> int:
    raw = os.environ.get(N_CHUNKS_ENV, "").strip()
    if not raw:
        return 1
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{N_CHUNKS_ENV} must be a positive integer; got {raw!r}."
        raise ConfigurationError(msg) from exc
    if value < 1:
        msg = f"{N_CHUNKS_ENV} must be a positive integer; got {raw!r}."
        raise ConfigurationError(msg)
    return value


@dataclass(frozen=True)
class SolverConfig:
    """Numerical settings for assembling and solving the bordered system.

    Notes
    -----
    - ``n_chunks`` partitions the rows when accumulating ``X'WX`` and
      ``X'Wy``; partial sums are combined in chunk order. When left as
      None it is read from ``KKTREG_N_CHUNKS`` (default 1).
    - ``max_workers`` bounds the thread pool used for chunked accumulation.
    - ``rcond_tol`` is the smallest accepted reciprocal condition estimate
      of the augmented matrix; below it the system is reported singular.
    - ``verify_constraints`` re-checks ``C b = d`` after the solve with
      relative tolerance ``verify_rtol``.

    """

    n_chunks: int | None = None
    max_workers: int | None = None
    rcond_tol: float = 1e-13
    verify_constraints: bool = True
    verify_rtol: float = 1e-9
    check_finite: bool = True

    def __post_init__(self) -> None:
        n_chunks = _env_n_chunks() if self.n_chunks is None else self.n_chunks
        if isinstance(n_chunks, bool) or not isinstance(n_chunks, (int, np.integer)) or n_chunks < 1:
            msg = f"n_chunks must be a positive integer; got {n_chunks!r}."
            raise ConfigurationError(msg)
        if self.max_workers is not None and int(self.max_workers) < 1:
            msg = f"max_workers must be positive when given; got {self.max_workers!r}."
            raise ConfigurationError(msg)
        if not (np.isfinite(self.rcond_tol) and 0.0 <= float(self.rcond_tol) < 1.0):
            raise ConfigurationError("rcond_tol must lie in [0, 1).")
        if not (np.isfinite(self.verify_rtol) and float(self.verify_rtol) > 0.0):
            raise ConfigurationError("verify_rtol must be a positive finite number.")
        object.__setattr__(self, "n_chunks", int(n_chunks))


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class RegressionResult:
    """Container for a constrained weighted least-squares fit.

    ``params`` holds the coefficients indexed by regressor key and
    ``multipliers`` the Lagrange multipliers indexed by constraint position.
    Fitted values, residuals and constraint residuals are computed on first
    access and cached.
    """

    params: pd.Series
    multipliers: pd.Series
    system: ks.AugmentedSystem
    solution: NDArray[np.float64]
    design: NDArray[np.float64]
    regressand: NDArray[np.float64]
    weights: pd.Series
    n_obs: int
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(
            f"{k}={v}" for k, v in self.model_info.items() if k in ("Estimator", "p", "m")
        )
        return f"RegressionResult(k={len(self.params)}, n={self.n_obs}, {head})"

    @classmethod
    def from_solution(  # noqa: PLR0913
        cls,
        system: ks.AugmentedSystem,
        solution: NDArray[np.float64],
        *,
        design: NDArray[np.float64],
        regressand: NDArray[np.float64],
        weights: NDArray[np.float64],
        rows: Iterable[Hashable],
        model_info: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> RegressionResult:
        """Split ``[beta; lambda]`` into labelled coefficient/multiplier Series."""
        beta, lam = ks.split_solution(solution, system.n_regressors)
        sol = np.array(solution, dtype=np.float64, copy=True).reshape(-1)
        sol.setflags(write=False)
        params = pd.Series(beta, index=pd.Index(list(system.regressors), dtype=object), name="params")
        multipliers = pd.Series(lam, index=pd.RangeIndex(system.n_constraints), name="multipliers")
        multipliers.attrs["labels"] = tuple(system.constraint_labels)
        row_index = pd.Index(list(rows), dtype=object)
        w = pd.Series(np.asarray(weights, dtype=np.float64), index=row_index, name="weight")
        return cls(
            params=params,
            multipliers=multipliers,
            system=system,
            solution=sol,
            design=np.asarray(design, dtype=np.float64),
            regressand=np.asarray(regressand, dtype=np.float64),
            weights=w,
            n_obs=int(row_index.shape[0]),
            model_info=dict(model_info or {}),
            extra=dict(extra or {}),
        )

    @property
    def augmented_matrix(self) -> NDArray[np.float64]:
        return self.system.matrix

    @property
    def augmented_vector(self) -> NDArray[np.float64]:
        return self.system.vector

    @property
    def constraint_labels(self) -> tuple[str, ...]:
        return tuple(self.system.constraint_labels)

    @cached_property
    def fitted_values(self) -> pd.Series:
        """``X b`` indexed by selected row id."""
        yhat = self.design @ self.params.to_numpy(dtype=np.float64)
        return pd.Series(yhat, index=self.weights.index, name="fitted")

    @cached_property
    def residuals(self) -> pd.Series:
        """``y - X b`` indexed by selected row id."""
        resid = self.regressand - self.fitted_values.to_numpy(dtype=np.float64)
        return pd.Series(resid, index=self.weights.index, name="residual")

    @cached_property
    def constraint_residuals(self) -> pd.Series:
        """``C b - d`` indexed by constraint position."""
        C = self.system.constraint_matrix
        d = self.system.constraint_rhs
        out = C @ self.params.to_numpy(dtype=np.float64) - d
        return pd.Series(out, index=pd.RangeIndex(self.system.n_constraints), name="constraint_residual")

    @cached_property
    def weighted_ssr(self) -> float:
        """Weighted residual sum of squares ``sum_i w_i e_i^2``."""
        e = self.residuals.to_numpy(dtype=np.float64)
        return float(np.sum(self.weights.to_numpy(dtype=np.float64) * e * e))

