"""Observation selection, design extraction and weight construction.

The selector and the weight builder read weights through the same accessor
(:func:`observation_weights`) so the inclusion rule ``weight > 0`` and the
normalisation ``sum(w) == n`` cannot disagree about which rows carry weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import DataAccessError, NumericalError

if TYPE_CHECKING:
    from collections.abc import Hashable, Sequence

    from numpy.typing import NDArray

    from kktreg.estimators.base import ModelSpec
    from kktreg.utils.source import TabularSource

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ObservationSet",
    "build_weights",
    "describe_observations",
    "extract_design",
    "extract_regressand",
    "observation_weights",
    "select_observations",
]


@dataclass(frozen=True)
class ObservationSet:
    """Ordered row identifiers used by a regression run, with drop counts."""

    rows: tuple[Hashable, ...]
    n_source_rows: int
    dropped_zero_weight: int = 0
    dropped_negative_weight: int = 0
    dropped_non_finite: int = 0

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def n_obs(self) -> int:
        return len(self.rows)

    def dropped_stats(self) -> dict[str, int]:
        return {
            "zero_weight": int(self.dropped_zero_weight),
            "negative_weight": int(self.dropped_negative_weight),
            "na": int(self.dropped_non_finite),
        }


def _read(source: TabularSource, column: Hashable, rows: Sequence[Hashable] | None) -> NDArray[np.float64]:
    try:
        return np.asarray(source.values(column, rows), dtype=np.float64).reshape(-1)
    except KeyError as exc:
        msg = f"Column '{column}' or a requested row is missing from the data source."
        raise DataAccessError(msg) from exc


def observation_weights(
    source: TabularSource, spec: ModelSpec, rows: Sequence[Hashable] | None = None,
) -> NDArray[np.float64]:
    """Raw weights for ``rows`` (all source rows when None).

    Without a weight column every row weighs 1. Missing, non-numeric or
    infinite weight cells read as 0, which excludes the row.
    """
    if spec.weight is None:
        n = len(source.row_keys()) if rows is None else len(rows)
        return np.ones((n,), dtype=np.float64)
    w = _read(source, spec.weight, rows)
    return np.where(np.isfinite(w), w, 0.0)


def select_observations(source: TabularSource, spec: ModelSpec) -> ObservationSet:
    """Select rows with positive weight and finite regressand/regressor cells.

    Row order follows ``source.row_keys()``; incomplete rows are dropped
    silently (counted in the returned drop statistics).
    """
    keys = tuple(source.row_keys())
    n = len(keys)
    w = observation_weights(source, spec)
    if w.shape[0] != n:
        msg = f"Weight column has {w.shape[0]} values for {n} rows."
        raise DataAccessError(msg)
    finite = np.ones((n,), dtype=bool)
    for column in (spec.regressand, *spec.regressors):
        vals = _read(source, column, None)
        if vals.shape[0] != n:
            msg = f"Column '{column}' has {vals.shape[0]} values for {n} rows."
            raise DataAccessError(msg)
        finite &= np.isfinite(vals)
    positive = w > 0.0
    keep = positive & finite
    obs = ObservationSet(
        rows=tuple(k for k, flag in zip(keys, keep) if flag),
        n_source_rows=n,
        dropped_zero_weight=int(np.sum(w == 0.0)),
        dropped_negative_weight=int(np.sum(w < 0.0)),
        dropped_non_finite=int(np.sum(positive & ~finite)),
    )
    LOGGER.debug(
        "Selected %d of %d rows (dropped: %s).", obs.n_obs, n, obs.dropped_stats(),
    )
    return obs


def _rows_of(observations: ObservationSet | Sequence[Hashable]) -> tuple[Hashable, ...]:
    if isinstance(observations, ObservationSet):
        return observations.rows
    return tuple(observations)


def _extract_columns(
    source: TabularSource, columns: Sequence[Hashable], rows: tuple[Hashable, ...],
) -> NDArray[np.float64]:
    out = np.empty((len(rows), len(columns)), dtype=np.float64)
    for j, column in enumerate(columns):
        vals = _read(source, column, rows)
        if vals.shape[0] != len(rows):
            msg = f"Column '{column}' returned {vals.shape[0]} values for {len(rows)} selected rows."
            raise DataAccessError(msg)
        bad = ~np.isfinite(vals)
        if np.any(bad):
            row = rows[int(np.argmax(bad))]
            msg = f"Selected row '{row}' has no finite value in column '{column}'."
            raise DataAccessError(msg)
        out[:, j] = vals
    return out


def extract_design(
    source: TabularSource, spec: ModelSpec, observations: ObservationSet | Sequence[Hashable],
) -> NDArray[np.float64]:
    """Design matrix X (n x p): row i holds the regressor cells of row i."""
    return _extract_columns(source, spec.regressors, _rows_of(observations))


def extract_regressand(
    source: TabularSource, spec: ModelSpec, observations: ObservationSet | Sequence[Hashable],
) -> NDArray[np.float64]:
    """Regressand vector y (n,)."""
    return _extract_columns(source, (spec.regressand,), _rows_of(observations))[:, 0]


def build_weights(
    source: TabularSource, spec: ModelSpec, observations: ObservationSet | Sequence[Hashable],
) -> NDArray[np.float64]:
    """Weights of the selected rows rescaled by ``n / sum(w)`` so they sum to n."""
    rows = _rows_of(observations)
    w = observation_weights(source, spec, rows)
    total = float(np.sum(w))
    if not np.isfinite(total) or total <= 0.0:
        msg = f"Total weight of the {len(rows)} selected observations is {total!r}; cannot normalise."
        raise NumericalError(msg)
    if np.any(w < 0.0):
        raise DataAccessError("Selected observations carry negative weights; source changed after selection.")
    return w * (len(rows) / total)


def describe_observations(observations: ObservationSet) -> dict[str, Any]:
    """Summary dict recorded in result metadata."""
    return {
        "n_obs": observations.n_obs,
        "n_source_rows": observations.n_source_rows,
        "dropped_stats": observations.dropped_stats(),
    }
