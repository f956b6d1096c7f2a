"""Bordered (KKT) system for equality-constrained weighted least squares.

Minimising ``(y - X b)' W (y - X b)`` subject to ``C b = d`` has the
first-order conditions

    [ X'WX   C' ] [ b      ]   [ X'Wy ]
    [ C      0  ] [ lambda ] = [ d    ]

The zero block makes the matrix symmetric but indefinite, so it is solved by
a general LU factorisation rather than Cholesky.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from kktreg.utils.constraints import expand_constraints

from . import linalg as la
from .errors import ConfigurationError, NumericalError, SingularSystemError

if TYPE_CHECKING:
    from collections.abc import Hashable, Sequence

    from numpy.typing import NDArray

    from kktreg.utils.constraints import LinearConstraint

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AugmentedSystem",
    "assemble_system",
    "build_augmented_system",
    "solve_augmented",
    "split_solution",
    "verify_constraints",
]


@dataclass(frozen=True)
class AugmentedSystem:
    """Immutable augmented matrix ``A`` ((p+m) x (p+m)) and vector ``b`` (p+m).

    Both arrays are read-only; the block accessors return read-only views.
    """

    matrix: NDArray[np.float64]
    vector: NDArray[np.float64]
    n_regressors: int
    n_constraints: int
    regressors: tuple[Hashable, ...] = ()
    constraint_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        k = self.n_regressors + self.n_constraints
        if self.matrix.shape != (k, k) or self.vector.shape != (k,):
            msg = (
                f"Augmented system shapes {self.matrix.shape}/{self.vector.shape} do not "
                f"match p={self.n_regressors}, m={self.n_constraints}."
            )
            raise ConfigurationError(msg)
        self.matrix.setflags(write=False)
        self.vector.setflags(write=False)

    @property
    def size(self) -> int:
        return self.n_regressors + self.n_constraints

    @property
    def gram(self) -> NDArray[np.float64]:
        """Top-left block ``X'WX``."""
        p = self.n_regressors
        return self.matrix[:p, :p]

    @property
    def moment(self) -> NDArray[np.float64]:
        """Leading block ``X'Wy`` of the vector."""
        return self.vector[: self.n_regressors]

    @property
    def constraint_matrix(self) -> NDArray[np.float64]:
        """Bottom-left block ``C``."""
        p = self.n_regressors
        return self.matrix[p:, :p]

    @property
    def constraint_rhs(self) -> NDArray[np.float64]:
        return self.vector[self.n_regressors :]

    def is_symmetric(self) -> bool:
        return bool(np.array_equal(self.matrix, self.matrix.T))


def build_augmented_system(  # noqa: PLR0913
    gram: NDArray[np.float64],
    moment: NDArray[np.float64],
    C: NDArray[np.float64],
    d: NDArray[np.float64],
    *,
    regressors: Sequence[Hashable] = (),
    constraint_labels: Sequence[str] = (),
) -> AugmentedSystem:
    """Place ``X'WX``, ``C'``, ``C`` and a zero block into the bordered matrix."""
    M = np.asarray(gram, dtype=np.float64)
    v = np.asarray(moment, dtype=np.float64).reshape(-1)
    Cd = np.asarray(C, dtype=np.float64)
    dd = np.asarray(d, dtype=np.float64).reshape(-1)
    p = v.shape[0]
    if Cd.size == 0:
        Cd = Cd.reshape(0, p)
    m = Cd.shape[0]
    if M.shape != (p, p) or Cd.shape != (m, p) or dd.shape != (m,):
        msg = f"Inconsistent block shapes: X'WX {M.shape}, X'Wy {v.shape}, C {Cd.shape}, d {dd.shape}."
        raise ConfigurationError(msg)
    if not (np.all(np.isfinite(M)) and np.all(np.isfinite(v))):
        raise NumericalError("Weighted cross-products X'WX / X'Wy contain non-finite values.")
    A = np.zeros((p + m, p + m), dtype=np.float64)
    A[:p, :p] = M
    A[:p, p:] = Cd.T
    A[p:, :p] = Cd
    b = np.concatenate([v, dd])
    return AugmentedSystem(
        matrix=A,
        vector=b,
        n_regressors=p,
        n_constraints=m,
        regressors=tuple(regressors),
        constraint_labels=tuple(constraint_labels),
    )


def assemble_system(  # noqa: PLR0913
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    weights: NDArray[np.float64] | la.WeightMatrix,
    constraints: Sequence[LinearConstraint],
    regressors: Sequence[Hashable],
    *,
    n_chunks: int = 1,
    max_workers: int | None = None,
) -> AugmentedSystem:
    """Build the augmented system from data blocks and sparse constraints."""
    W = weights if isinstance(weights, la.WeightMatrix) else la.WeightMatrix.diagonal(weights)
    M, v = la.accumulate_normal_equations(X, y, W, n_chunks=n_chunks, max_workers=max_workers)
    C, d = expand_constraints(constraints, regressors)
    return build_augmented_system(
        M,
        v,
        C,
        d,
        regressors=regressors,
        constraint_labels=[con.describe() for con in constraints],
    )


def _unit_diagonal(M: NDArray[np.float64]) -> NDArray[np.float64]:
    """Rescale a PSD matrix to unit diagonal so its rank ignores column scale."""
    diag = np.diag(M)
    inv = np.zeros_like(diag)
    np.divide(1.0, np.sqrt(diag), out=inv, where=diag > 0.0)
    return M * inv[:, None] * inv[None, :]


def _unit_rows(C: NDArray[np.float64]) -> NDArray[np.float64]:
    norms = np.max(np.abs(C), axis=1, keepdims=True)
    return C / np.where(norms > 0.0, norms, 1.0)


def _singular_error(system: AugmentedSystem, exc: Exception) -> SingularSystemError:
    p, m = system.n_regressors, system.n_constraints
    C = system.constraint_matrix
    gram_rank = la.matrix_rank(_unit_diagonal(system.gram), rtol=1e-10)
    kept = set(la.independent_rows(_unit_rows(C)).tolist()) if m else set()
    constraint_rank = len(kept)
    redundant = tuple(i for i in range(m) if i not in kept)
    if constraint_rank < m:
        block = "constraints"
        detail = (
            f"constraint rows are linearly dependent (rank(C)={constraint_rank} < m={m}); "
            f"redundant or contradictory constraints at positions {list(redundant)}"
        )
    else:
        block = "gram"
        detail = (
            f"regressors are not identified under the constraints "
            f"(rank(X'WX)={gram_rank}, p={p}, m={m}); check for collinear regressors "
            "or too few distinct observations"
        )
    msg = f"Augmented system ({p + m}x{p + m}) is singular: {detail}. [{exc}]"
    return SingularSystemError(
        msg,
        n_regressors=p,
        n_constraints=m,
        block=block,
        gram_rank=gram_rank,
        constraint_rank=constraint_rank,
        redundant_constraints=redundant,
        rcond=getattr(exc, "rcond", None),
    )


def solve_augmented(
    system: AugmentedSystem,
    *,
    rcond_tol: float = 1e-13,
    check_finite: bool = True,
    return_rcond: bool = False,
) -> NDArray[np.float64] | tuple[NDArray[np.float64], float]:
    """Solve ``A v = b`` by LU; singular systems raise ``SingularSystemError``.

    The matrix is first scaled symmetrically, ``(S A S) (S^-1 v) = S b``,
    so the condition estimate reflects rank rather than regressor or
    constraint scale. There is no pseudo-inverse fallback: an exactly zero
    pivot or a reciprocal condition estimate of the scaled matrix below
    ``rcond_tol`` is reported, never approximated.
    """
    s = la.equilibrate(system.matrix)
    scaled = system.matrix * s[:, None] * s[None, :]
    try:
        lu, piv, rcond = la.lu_factor_checked(
            scaled, rcond_tol=rcond_tol, check_finite=check_finite,
        )
    except np.linalg.LinAlgError as exc:
        raise _singular_error(system, exc) from exc
    sol = s * la.lu_solve((lu, piv), system.vector * s)
    if not np.all(np.isfinite(sol)):
        raise NumericalError("Solution of the augmented system contains non-finite values.")
    if return_rcond:
        return sol, rcond
    return sol


def split_solution(
    solution: NDArray[np.float64], n_regressors: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Split ``[beta; lambda]`` into coefficient and multiplier vectors."""
    sol = np.asarray(solution, dtype=np.float64).reshape(-1)
    if not 0 < n_regressors <= sol.shape[0]:
        msg = f"Cannot split a solution of length {sol.shape[0]} at p={n_regressors}."
        raise ConfigurationError(msg)
    return sol[:n_regressors].copy(), sol[n_regressors:].copy()


def verify_constraints(
    system: AugmentedSystem, beta: NDArray[np.float64], *, rtol: float = 1e-9,
) -> float:
    """Return ``max|C beta - d|``; raise NumericalError when above tolerance.

    The tolerance is ``rtol * max(1, max|d|, max(|C| |beta|))``.
    """
    if system.n_constraints == 0:
        return 0.0
    C = system.constraint_matrix
    d = system.constraint_rhs
    b = np.asarray(beta, dtype=np.float64).reshape(-1)
    viol = float(np.max(np.abs(C @ b - d)))
    scale = max(1.0, float(np.max(np.abs(d))), float(np.max(np.abs(C) @ np.abs(b))))
    tol = float(rtol) * scale
    if not viol <= tol:
        msg = f"Constraint violation after solve: max|C b - d|={viol:.3e} > tol={tol:.3e}"
        raise NumericalError(msg)
    return viol
