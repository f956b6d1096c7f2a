# kktreg/utils/__init__.py
"""Utility functions module."""
from .constraints import (
    LinearConstraint,
    coerce_constraints,
    expand_constraints,
    parse_constraints,
)
from .source import FrameSource, TabularSource, as_source

__all__ = [
    "FrameSource",
    "LinearConstraint",
    "TabularSource",
    "as_source",
    "coerce_constraints",
    "expand_constraints",
    "parse_constraints",
]
