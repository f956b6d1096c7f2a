"""Constrained weighted least squares (CWLS) estimator.

This module orchestrates a single regression run: observation selection,
design/regressand extraction, weight normalisation, assembly of the bordered
(KKT) system, its LU solve, and the split of the solution into coefficients
and Lagrange multipliers.
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import TYPE_CHECKING, Any

import numpy as np

from kktreg.core import observations as obs
from kktreg.core import system as ks
from kktreg.utils.source import as_source

from .base import ModelSpec, RegressionResult, SolverConfig

if TYPE_CHECKING:
    from collections.abc import Hashable, Iterable

    import pandas as pd
    from numpy.typing import NDArray

    from kktreg.utils.constraints import ConstraintLike
    from kktreg.utils.source import TabularSource

LOGGER = logging.getLogger(__name__)

__all__ = ["ConstrainedWLS", "fit_constrained"]


class ConstrainedWLS:
    """Weighted least squares subject to linear equality constraints.

    Solves ``min_b (y - X b)' W (y - X b)`` subject to ``C b = d`` through the
    bordered system ``[[X'WX, C'], [C, 0]] [b; lambda] = [X'Wy; d]``.

    Parameters
    ----------
    spec : ModelSpec
        Regressand, ordered regressors, constraints and weight column.
    data : DataFrame, mapping of columns, or TabularSource
        Read-only data snapshot. Rows with positive weight and finite
        regressand/regressor cells are used, in the source's row order.
    config : SolverConfig, optional
        Numerical settings. Defaults to ``SolverConfig()``.

    Attributes
    ----------
    observations : ObservationSet
        Selected rows and drop statistics.
    design_matrix : ndarray, shape (n, p)
    regressand_vector : ndarray, shape (n,)
    weight_vector : ndarray, shape (n,)
        Weights rescaled to sum to ``n``.
    system : AugmentedSystem
        Read-only augmented matrix and vector.

    Every stage is computed once and cached; ``fit()`` returns the same
    ``RegressionResult`` on repeated calls.

    """

    def __init__(
        self,
        spec: ModelSpec,
        data: Any,
        *,
        config: SolverConfig | None = None,
    ) -> None:
        self.spec = spec
        self.source: TabularSource = as_source(data)
        self.config = config if config is not None else SolverConfig()
        self._results: RegressionResult | None = None

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (
            f"ConstrainedWLS(regressand={self.spec.regressand!r}, "
            f"p={self.spec.n_regressors}, m={self.spec.n_constraints})"
        )

    @classmethod
    def from_frame(  # noqa: PLR0913
        cls,
        data: pd.DataFrame,
        regressand: Hashable,
        regressors: Iterable[Hashable],
        *,
        constraints: ConstraintLike | Iterable[ConstraintLike] | None = None,
        weights: Hashable | None = None,
        config: SolverConfig | None = None,
    ) -> ConstrainedWLS:
        """Build the estimator from a DataFrame and column names."""
        spec = ModelSpec(
            regressand=regressand,
            regressors=regressors,  # type: ignore[arg-type]
            constraints=constraints,  # type: ignore[arg-type]
            weight=weights,
        )
        return cls(spec, data, config=config)

    # ------------------------------------------------------------------
    # Cached stages
    # ------------------------------------------------------------------
    @cached_property
    def observations(self) -> obs.ObservationSet:
        return obs.select_observations(self.source, self.spec)

    @cached_property
    def design_matrix(self) -> NDArray[np.float64]:
        X = obs.extract_design(self.source, self.spec, self.observations)
        X.setflags(write=False)
        return X

    @cached_property
    def regressand_vector(self) -> NDArray[np.float64]:
        y = obs.extract_regressand(self.source, self.spec, self.observations)
        y.setflags(write=False)
        return y

    @cached_property
    def weight_vector(self) -> NDArray[np.float64]:
        w = obs.build_weights(self.source, self.spec, self.observations)
        w.setflags(write=False)
        return w

    @cached_property
    def system(self) -> ks.AugmentedSystem:
        cfg = self.config
        LOGGER.debug(
            "Assembling %d+%d bordered system from %d observations (n_chunks=%d).",
            self.spec.n_regressors,
            self.spec.n_constraints,
            self.observations.n_obs,
            cfg.n_chunks,
        )
        return ks.assemble_system(
            self.design_matrix,
            self.regressand_vector,
            self.weight_vector,
            self.spec.constraints,
            self.spec.regressors,
            n_chunks=int(cfg.n_chunks),
            max_workers=cfg.max_workers,
        )

    # ------------------------------------------------------------------
    # Fit
    # ------------------------------------------------------------------
    def fit(self) -> RegressionResult:
        """Solve the bordered system and return the cached result.

        Raises
        ------
        SingularSystemError
            When the augmented matrix is singular or its reciprocal
            condition estimate is below ``config.rcond_tol``.
        NumericalError
            For a non-positive total weight, non-finite cross-products, or
            a constraint violation above tolerance after the solve.

        """
        if self._results is not None:
            return self._results
        cfg = self.config
        system = self.system
        sol, rcond = ks.solve_augmented(
            system,
            rcond_tol=cfg.rcond_tol,
            check_finite=cfg.check_finite,
            return_rcond=True,
        )
        beta, _ = ks.split_solution(sol, system.n_regressors)
        max_violation = None
        if cfg.verify_constraints:
            max_violation = ks.verify_constraints(system, beta, rtol=cfg.verify_rtol)
        observations = self.observations
        self._results = RegressionResult.from_solution(
            system,
            sol,
            design=self.design_matrix,
            regressand=self.regressand_vector,
            weights=self.weight_vector,
            rows=observations.rows,
            model_info={
                "Estimator": "ConstrainedWLS",
                "p": system.n_regressors,
                "m": system.n_constraints,
                **obs.describe_observations(observations),
                "constraints": tuple(system.constraint_labels),
                "weight_column": self.spec.weight,
                "n_params_effective": system.n_regressors - system.n_constraints,
            },
            extra={
                "rcond": float(rcond),
                "max_constraint_violation": max_violation,
                "n_chunks": int(cfg.n_chunks),
            },
        )
        return self._results


def fit_constrained(  # noqa: PLR0913
    data: Any,
    regressand: Hashable,
    regressors: Iterable[Hashable],
    *,
    constraints: ConstraintLike | Iterable[ConstraintLike] | None = None,
    weights: Hashable | None = None,
    config: SolverConfig | None = None,
) -> RegressionResult:
    """Fit a constrained weighted regression in one call."""
    spec = ModelSpec(
        regressand=regressand,
        regressors=regressors,  # type: ignore[arg-type]
        constraints=constraints,  # type: ignore[arg-type]
        weight=weights,
    )
    return ConstrainedWLS(spec, data, config=config).fit()
