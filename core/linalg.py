"""Dense linear algebra routines for the bordered least-squares system.

This module provides weighted cross-products (diagonal or dense weighting),
row-partitioned accumulation of the normal equations, an LU solve that
reports singularity instead of approximating, and rank helpers used for
diagnostics. Explicit matrix inversion is avoided.
"""

from __future__ import annotations

import logging
import warnings as _warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
from scipy.linalg import get_lapack_funcs

from .errors import ConfigurationError, NumericalError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

# Matrix type alias
Matrix = Any

__all__ = [
    "Matrix",
    "WeightMatrix",
    "accumulate_normal_equations",
    "equilibrate",
    "gram",
    "independent_rows",
    "lu_factor_checked",
    "lu_solve",
    "matrix_rank",
    "normal_equations",
    "row_chunks",
    "symmetrize",
    "to_dense",
    "xty",
]


def _assert_all_finite(*arrays: NDArray[np.float64] | None, what: str = "Input") -> None:
    """Raise NumericalError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        if not np.all(np.isfinite(np.asarray(a))):
            msg = f"{what} contains NA/NaN/Inf values."
            raise NumericalError(msg)


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object to a dense float64 numpy array."""
    return np.asarray(A, dtype=np.float64)


def symmetrize(A: NDArray[np.float64]) -> NDArray[np.float64]:
    """Return ``(A + A') / 2``; exact on entries that are already symmetric."""
    return 0.5 * (A + A.T)


def _validate_weights(weights: Sequence[float], n: int) -> NDArray[np.float64]:
    """Validate nonnegative finite weights and return a dense array of shape (n,)."""
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = f"weights length ({w.shape[0]}) must match number of rows ({n})."
        raise ConfigurationError(msg)
    if np.any(~np.isfinite(w)):
        raise NumericalError("weights must be finite.")
    if np.any(w < 0):
        raise ConfigurationError("weights must be nonnegative.")
    return w


# ---------------------------------------------------------------------
# Weighting matrices: closed set of two variants
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WeightMatrix:
    """Observation weighting matrix ``W`` in one of two representations.

    ``kind == "diagonal"`` stores the diagonal as a vector of length n;
    ``kind == "dense"`` stores a full symmetric PSD (n x n) matrix. Use the
    :meth:`diagonal` / :meth:`dense` constructors rather than calling the
    class directly.
    """

    kind: str
    data: NDArray[np.float64]

    def __post_init__(self) -> None:
        if self.kind not in {"diagonal", "dense"}:
            msg = f"Unknown weight matrix kind '{self.kind}'; expected 'diagonal' or 'dense'."
            raise ConfigurationError(msg)
        self.data.setflags(write=False)

    @classmethod
    def diagonal(cls, weights: Sequence[float]) -> WeightMatrix:
        w = np.array(weights, dtype=np.float64).reshape(-1)
        return cls("diagonal", _validate_weights(w, w.shape[0]))

    @classmethod
    def dense(cls, W: Matrix) -> WeightMatrix:
        Wd = np.array(to_dense(W), dtype=np.float64)
        if Wd.ndim != 2 or Wd.shape[0] != Wd.shape[1]:
            raise ConfigurationError("Dense weight matrix must be square (n x n).")
        _assert_all_finite(Wd, what="Weight matrix")
        if not np.allclose(Wd, Wd.T, atol=1e-10, rtol=1e-8):
            raise ConfigurationError("Dense weight matrix must be symmetric.")
        # PSD check: allow tiny negative eigenvalues from roundoff only
        evals = np.linalg.eigvalsh(symmetrize(Wd))
        if evals.size and np.min(evals) < -1e-12 * max(1.0, float(np.max(np.abs(evals)))):
            raise ConfigurationError("Dense weight matrix must be positive semi-definite.")
        return cls("dense", Wd)

    @property
    def n(self) -> int:
        return int(self.data.shape[0])

    @property
    def is_diagonal(self) -> bool:
        return self.kind == "diagonal"

    def to_dense(self) -> NDArray[np.float64]:
        """Materialise W as an (n x n) array."""
        if self.is_diagonal:
            return np.diag(self.data)
        return np.array(self.data)


def _as_weight_matrix(W: WeightMatrix | Sequence[float] | None, n: int) -> WeightMatrix:
    if W is None:
        return WeightMatrix.diagonal(np.ones(n, dtype=np.float64))
    if isinstance(W, WeightMatrix):
        if W.n != n:
            msg = f"Weight matrix dimension ({W.n}) must match number of rows ({n})."
            raise ConfigurationError(msg)
        return W
    return WeightMatrix.diagonal(_validate_weights(W, n))


def gram(X: Matrix, W: WeightMatrix | Sequence[float] | None = None) -> NDArray[np.float64]:
    """Compute ``X' W X``; ``W=None`` means the identity.

    Diagonal weights scale the rows of X directly (no square roots), so
    integer or dyadic data produce exact cross-products.
    """
    Xd = to_dense(X)
    Wm = _as_weight_matrix(W, Xd.shape[0])
    if Wm.is_diagonal:
        return Xd.T @ (Xd * Wm.data.reshape(-1, 1))
    return Xd.T @ (Wm.data @ Xd)


def xty(X: Matrix, y: Matrix, W: WeightMatrix | Sequence[float] | None = None) -> NDArray[np.float64]:
    """Compute ``X' W y`` as a 1-D vector; ``W=None`` means the identity."""
    Xd = to_dense(X)
    yd = to_dense(y).reshape(-1)
    if yd.shape[0] != Xd.shape[0]:
        msg = f"y length ({yd.shape[0]}) must match number of rows of X ({Xd.shape[0]})."
        raise ConfigurationError(msg)
    Wm = _as_weight_matrix(W, Xd.shape[0])
    if Wm.is_diagonal:
        return Xd.T @ (yd * Wm.data)
    return Xd.T @ (Wm.data @ yd)


def normal_equations(
    X: Matrix, y: Matrix, W: WeightMatrix | Sequence[float] | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Return ``(X'WX, X'Wy)`` with the Gram matrix exactly symmetric."""
    return symmetrize(gram(X, W)), xty(X, y, W)


def row_chunks(n: int, n_chunks: int) -> list[slice]:
    """Split ``range(n)`` into at most ``n_chunks`` contiguous, ordered slices."""
    if n_chunks < 1:
        raise ConfigurationError("n_chunks must be a positive integer.")
    k = max(1, min(int(n_chunks), int(n)))
    bounds = np.linspace(0, n, k + 1).round().astype(np.int64)
    return [slice(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:])]


def accumulate_normal_equations(  # noqa: PLR0913
    X: Matrix,
    y: Matrix,
    W: WeightMatrix | Sequence[float] | None = None,
    *,
    n_chunks: int = 1,
    max_workers: int | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Accumulate ``X'WX`` and ``X'Wy`` over row partitions.

    Partial products are computed per contiguous row chunk (in a thread pool
    when more than one chunk is requested) and summed in chunk order, so the
    result is independent of task completion order. Dense weighting couples
    rows and is always accumulated in a single pass.
    """
    Xd = to_dense(X)
    yd = to_dense(y).reshape(-1)
    n = Xd.shape[0]
    Wm = _as_weight_matrix(W, n)
    if not Wm.is_diagonal or n_chunks <= 1 or n <= 1:
        if n_chunks > 1 and not Wm.is_diagonal:
            LOGGER.debug("Dense weighting couples rows; ignoring n_chunks=%d.", n_chunks)
        return normal_equations(Xd, yd, Wm)

    chunks = row_chunks(n, n_chunks)
    w = Wm.data

    def _partial(sl: slice) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        Xc = Xd[sl]
        Xw = Xc * w[sl].reshape(-1, 1)
        return Xc.T @ Xw, Xw.T @ yd[sl]

    LOGGER.debug("Accumulating normal equations over %d row chunks.", len(chunks))
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        # executor.map preserves input order
        parts = list(ex.map(_partial, chunks))
    p = Xd.shape[1]
    M = np.zeros((p, p), dtype=np.float64)
    v = np.zeros((p,), dtype=np.float64)
    for Mc, vc in parts:
        M += Mc
        v += vc
    return symmetrize(M), v


# ---------------------------------------------------------------------
# Solvers and rank helpers
# ---------------------------------------------------------------------
def equilibrate(A: Matrix, *, max_iter: int = 16) -> NDArray[np.float64]:
    """Symmetric scaling vector ``s`` balancing ``diag(s) A diag(s)``.

    Ruiz iteration on row and column max-norms, with every factor rounded to
    a power of two so applying the scaling introduces no rounding error.
    Rows that are entirely zero keep factor 1.
    """
    Ad = np.abs(to_dense(A))
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        msg = f"Equilibration requires a square matrix; got shape {Ad.shape}."
        raise ConfigurationError(msg)
    s = np.ones(Ad.shape[0], dtype=np.float64)
    for _ in range(int(max_iter)):
        S = Ad * s[:, None] * s[None, :]
        r = np.maximum(S.max(axis=1, initial=0.0), S.max(axis=0, initial=0.0))
        r[~(r > 0.0) | ~np.isfinite(r)] = 1.0
        f = np.exp2(np.round(-0.5 * np.log2(r)))
        if np.all(f == 1.0):
            break
        s *= f
    return s


def lu_factor_checked(
    A: Matrix, *, rcond_tol: float = 1e-13, check_finite: bool = True,
) -> tuple[NDArray[np.float64], NDArray[np.int32], float]:
    """LU-factorise a square matrix, refusing singular or near-singular input.

    Returns ``(lu, piv, rcond)`` where ``rcond`` is LAPACK's 1-norm reciprocal
    condition estimate. Raises ``numpy.linalg.LinAlgError`` when a pivot is
    exactly zero or ``rcond < rcond_tol``.
    """
    Ad = to_dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        msg = f"LU solve requires a square matrix; got shape {Ad.shape}."
        raise ConfigurationError(msg)
    if check_finite:
        _assert_all_finite(Ad, what="Matrix")
    with _warnings.catch_warnings():
        # lu_factor reports exactly-zero pivots as a warning; promote it
        _warnings.simplefilter("error", sla.LinAlgWarning)
        try:
            lu, piv = sla.lu_factor(Ad, check_finite=False)
        except sla.LinAlgWarning as exc:
            raise np.linalg.LinAlgError(f"Matrix is exactly singular: {exc}") from exc
    anorm = float(np.linalg.norm(Ad, 1))
    if anorm == 0.0:
        raise np.linalg.LinAlgError("Matrix is identically zero.")
    (gecon,) = get_lapack_funcs(("gecon",), (lu,))
    rcond, info = gecon(lu, anorm, norm="1")
    rcond = float(rcond)
    if info < 0:
        msg = f"LAPACK gecon failed with info={info}."
        raise np.linalg.LinAlgError(msg)
    LOGGER.debug("LU factorisation of %dx%d matrix: rcond=%.3e", Ad.shape[0], Ad.shape[1], rcond)
    if not np.isfinite(rcond) or rcond < float(rcond_tol):
        msg = f"Matrix is numerically singular: rcond={rcond:.3e} < tol={float(rcond_tol):.1e}."
        err = np.linalg.LinAlgError(msg)
        err.rcond = rcond
        raise err
    return lu, piv, rcond


def lu_solve(lu_and_piv: tuple[NDArray[np.float64], NDArray[np.int32]], b: Matrix) -> NDArray[np.float64]:
    """Solve ``A x = b`` from a prior :func:`lu_factor_checked` factorisation."""
    return np.asarray(sla.lu_solve(lu_and_piv, to_dense(b), check_finite=False), dtype=np.float64)


def matrix_rank(A: Matrix, *, rtol: float | None = None) -> int:
    """Numerical rank via SVD (0 for empty matrices)."""
    Ad = to_dense(A)
    if Ad.size == 0:
        return 0
    s = np.linalg.svd(Ad, compute_uv=False)
    if rtol is None:
        rtol = np.finfo(float).eps * max(Ad.shape)
    return int(np.sum(s > float(rtol) * float(s[0]))) if s[0] > 0 else 0


def independent_rows(R: Matrix, *, rtol: float = 1e-10) -> NDArray[np.int64]:
    """Return indices of a maximal independent subset of the rows of R.

    Rows are scanned in order and kept when they raise the rank, so a row
    that is a combination of earlier rows is the one reported as dependent.
    """
    Rd = to_dense(R)
    if Rd.size == 0:
        return np.zeros((0,), dtype=np.int64)
    keep: list[int] = []
    for i in range(Rd.shape[0]):
        cand = [*keep, i]
        if matrix_rank(Rd[cand, :], rtol=rtol) == len(cand):
            keep.append(i)
    return np.asarray(keep, dtype=np.int64)
