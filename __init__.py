"""kktreg: Equality-constrained weighted least squares.

This package fits linear regressions under linear equality constraints on
the coefficients by solving the bordered (KKT) system with an LU
factorisation, and reports coefficients together with Lagrange multipliers.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "AugmentedSystem",
    "ConfigurationError",
    "ConstrainedWLS",
    "DataAccessError",
    "FrameSource",
    "LinearConstraint",
    "ModelSpec",
    "NumericalError",
    "RegressionError",
    "RegressionResult",
    "SingularSystemError",
    "SolverConfig",
    "WeightMatrix",
    "fit_constrained",
    "parse_constraints",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "ModelSpec": ("kktreg.estimators.base", "ModelSpec"),
    "SolverConfig": ("kktreg.estimators.base", "SolverConfig"),
    "RegressionResult": ("kktreg.estimators.base", "RegressionResult"),
    "ConstrainedWLS": ("kktreg.estimators.cwls", "ConstrainedWLS"),
    "fit_constrained": ("kktreg.estimators.cwls", "fit_constrained"),
    "AugmentedSystem": ("kktreg.core.system", "AugmentedSystem"),
    "WeightMatrix": ("kktreg.core.linalg", "WeightMatrix"),
    "RegressionError": ("kktreg.core.errors", "RegressionError"),
    "ConfigurationError": ("kktreg.core.errors", "ConfigurationError"),
    "DataAccessError": ("kktreg.core.errors", "DataAccessError"),
    "NumericalError": ("kktreg.core.errors", "NumericalError"),
    "SingularSystemError": ("kktreg.core.errors", "SingularSystemError"),
    "LinearConstraint": ("kktreg.utils.constraints", "LinearConstraint"),
    "parse_constraints": ("kktreg.utils.constraints", "parse_constraints"),
    "FrameSource": ("kktreg.utils.source", "FrameSource"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'kktreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
