"""Tabular data sources.

A source exposes row identifiers in a stable order and typed numeric reads of
named columns. ``FrameSource`` adapts a pandas DataFrame; any object offering
the same four methods can be passed to the estimators instead.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import pandas as pd

from kktreg.core.errors import ConfigurationError, DataAccessError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["FrameSource", "TabularSource", "as_source"]


class TabularSource(Protocol):
    """Read-only, row-indexed, column-typed table."""

    def row_keys(self) -> Sequence[Hashable]:
        """Row identifiers in the table's natural order."""
        ...

    def has_column(self, column: Hashable) -> bool:
        ...

    def value(self, row: Hashable, column: Hashable) -> float:
        """Cell as float; NaN when the cell is missing or not numeric."""
        ...

    def values(
        self, column: Hashable, rows: Iterable[Hashable] | None = None,
    ) -> NDArray[np.float64]:
        """Column as float64 array over ``rows`` (default: all rows, in order)."""
        ...


class FrameSource:
    """``TabularSource`` over a pandas DataFrame.

    Columns are coerced to float64 on first read (non-numeric and missing
    cells become NaN) and cached, so repeated reads within a run see the same
    snapshot. The row index must be unique.
    """

    def __init__(self, frame: pd.DataFrame) -> None:
        if not isinstance(frame, pd.DataFrame):
            msg = f"FrameSource expects a pandas DataFrame; got {type(frame).__name__}."
            raise ConfigurationError(msg)
        if not frame.index.is_unique:
            raise DataAccessError("DataFrame row index must be unique to identify observations.")
        self._frame = frame
        self._cache: dict[Hashable, pd.Series] = {}

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return f"FrameSource(rows={len(self._frame)}, columns={list(self._frame.columns)})"

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame

    def row_keys(self) -> tuple[Hashable, ...]:
        return tuple(self._frame.index)

    def has_column(self, column: Hashable) -> bool:
        try:
            return column in self._frame.columns
        except TypeError:
            return False

    def _numeric(self, column: Hashable) -> pd.Series:
        cached = self._cache.get(column)
        if cached is not None:
            return cached
        if not self.has_column(column):
            msg = f"Column '{column}' not found in data source."
            raise DataAccessError(msg)
        col = self._frame[column]
        if isinstance(col, pd.DataFrame):
            msg = f"Column label '{column}' is duplicated in data source."
            raise DataAccessError(msg)
        coerced = pd.to_numeric(col, errors="coerce")
        out = pd.Series(
            coerced.to_numpy(dtype=np.float64, na_value=np.nan),
            index=self._frame.index,
            name=column,
        )
        self._cache[column] = out
        return out

    def values(
        self, column: Hashable, rows: Iterable[Hashable] | None = None,
    ) -> NDArray[np.float64]:
        s = self._numeric(column)
        data = s.to_numpy(dtype=np.float64)
        if rows is None:
            return data.copy()
        rows_list = list(rows)
        pos = s.index.get_indexer(rows_list)
        if np.any(pos < 0):
            missing = [r for r, i in zip(rows_list, pos) if i < 0]
            msg = f"Rows {missing[:5]} not found in data source (column '{column}')."
            raise DataAccessError(msg)
        return data[pos]

    def value(self, row: Hashable, column: Hashable) -> float:
        return float(self.values(column, [row])[0])


def as_source(data: Any) -> TabularSource:
    """Wrap ``data`` as a tabular source.

    Accepts a DataFrame, a mapping of column name to column values, or an
    object already implementing the ``TabularSource`` methods.
    """
    if isinstance(data, pd.DataFrame):
        return FrameSource(data)
    if isinstance(data, Mapping):
        return FrameSource(pd.DataFrame(dict(data)))
    required = ("row_keys", "has_column", "value", "values")
    if all(callable(getattr(data, name, None)) for name in required):
        return data
    msg = (
        "data must be a pandas DataFrame, a mapping of columns, or provide "
        f"{', '.join(required)}; got {type(data).__name__}."
    )
    raise ConfigurationError(msg)
