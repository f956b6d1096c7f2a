from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy.linalg import null_space

REGRESSORS = ("Beta", "Size", "Value", "Momentum", "Tech", "Energy", "Utility")
CONSTRAINTS = "Size + 2*Value = 3; Tech + Energy + Utility = 0"

# row: (Beta, Size, Value, Momentum, sector, Return, Weight)
_ROWS = {
    "R0": (2, 4, 1.5, 12, "Tech", 99.0861, 1),
    "R1": (2, -2, -0.5, 29, "Energy", 98.5, 2),
    "R2": (2, 6, 3.0, -8, "Utility", 51.0, 3),
    "R3": (2, 3, 2.0, 420, "Energy", 40.25, 4),
    "R4": (5, 1, 1.0, 1, "Tech", 1000.0, 0),
    "R5": (0, 10, -1.0, 20, "Tech", 12.5, 1),
    "R6": (0, -4, 0.5, 15, "Energy", -7.25, 2),
    "R7": (0, 2, 4.0, 40, "Utility", 33.0, 3),
    "R8": (0, 8, -2.5, -10, "Tech", 18.75, 1),
    "R9": (0, 5, 1.0, 50, "Energy", 64.0, 2),
    "R10": (0, -6, 2.5, 24, "Utility", -3.5, 1),
}


def _scenario_frame() -> pd.DataFrame:
    records = {}
    for key, (beta, size, value, mom, sector, ret, w) in _ROWS.items():
        records[key] = {
            "Beta": float(beta),
            "Size": float(size),
            "Value": float(value),
            "Momentum": float(mom),
            "Tech": 1.0 if sector == "Tech" else 0.0,
            "Energy": 1.0 if sector == "Energy" else 0.0,
            "Utility": 1.0 if sector == "Utility" else 0.0,
            "Return": float(ret),
            "Weight": float(w),
        }
    return pd.DataFrame.from_dict(records, orient="index")


@pytest.fixture
def scenario_frame() -> pd.DataFrame:
    """Eleven rows, one with zero weight; raw weights sum to 20."""
    return _scenario_frame()


@pytest.fixture
def scenario_regressors() -> tuple[str, ...]:
    return REGRESSORS


@pytest.fixture
def scenario_constraints() -> str:
    return CONSTRAINTS


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def _reference_solution(X, y, w, C, d):
    """Constrained WLS via a null-space parametrisation (independent of the KKT path)."""
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    sw = np.sqrt(np.asarray(w, dtype=float))
    beta_p = np.linalg.pinv(C) @ d
    N = null_space(C)
    z, *_ = np.linalg.lstsq(sw[:, None] * (X @ N), sw * (y - X @ beta_p), rcond=None)
    return beta_p + N @ z


@pytest.fixture
def reference_solver():
    return _reference_solution
